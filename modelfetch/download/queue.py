"""
下载任务队列

按优先级出队（同优先级按请求顺序），同一模型 id 同时只能有一个任务。
"""

import asyncio
import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Set


class Priority(Enum):
    """下载优先级"""

    HIGH = 0
    NORMAL = 1
    LOW = 2


@dataclass(order=True)
class DownloadTask:
    """队列中的下载任务，按 (priority, seq) 排序"""

    priority: int
    seq: int
    model_id: str = field(compare=False)


class DownloadQueue:
    """下载队列"""

    def __init__(self):
        self._queue: "asyncio.PriorityQueue[DownloadTask]" = asyncio.PriorityQueue()
        self._claimed: Set[str] = set()
        self._seq = itertools.count()
        self._queued_total = 0

    def __len__(self) -> int:
        return self._queue.qsize()

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._claimed

    def put(self, model_id: str, priority: Priority = Priority.NORMAL) -> bool:
        """
        模型入队

        Returns:
            是否新入队；同一模型已排队或正在处理时返回 False
        """
        if model_id in self._claimed:
            return False

        self._claimed.add(model_id)
        self._queue.put_nowait(DownloadTask(priority.value, next(self._seq), model_id))
        self._queued_total += 1
        return True

    async def get(self) -> DownloadTask:
        """等待下一个任务"""
        return await self._queue.get()

    def task_done(self):
        """标记取出的任务处理结束（模型由 release 释放）"""
        self._queue.task_done()

    def release(self, model_id: str):
        """释放模型，之后可以再次入队"""
        self._claimed.discard(model_id)

    def get_stats(self) -> Dict[str, int]:
        return {
            "pending": len(self),
            "claimed": len(self._claimed),
            "queued_total": self._queued_total,
        }
