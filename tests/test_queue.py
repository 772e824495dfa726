import pytest

from modelfetch.download.queue import DownloadQueue, Priority


@pytest.mark.asyncio
async def test_priority_then_request_order():
    queue = DownloadQueue()
    queue.put("low", Priority.LOW)
    queue.put("first")
    queue.put("urgent", Priority.HIGH)
    queue.put("second")

    order = [(await queue.get()).model_id for _ in range(len(queue))]

    assert order == ["urgent", "first", "second", "low"]


@pytest.mark.asyncio
async def test_same_model_is_claimed_until_released():
    queue = DownloadQueue()

    assert queue.put("small") is True
    assert queue.put("small", Priority.HIGH) is False
    assert "small" in queue
    assert len(queue) == 1

    task = await queue.get()
    assert queue.put("small") is False

    queue.release(task.model_id)
    assert "small" not in queue
    assert queue.put("small") is True

    # task_done 只结束取出的任务，不会释放重新入队的模型
    queue.task_done()
    assert "small" in queue
    assert queue.get_stats() == {"pending": 1, "claimed": 1, "queued_total": 2}


def test_release_before_pickup():
    queue = DownloadQueue()
    queue.put("small")

    queue.release("small")

    assert "small" not in queue
    assert queue.put("small") is True
