"""
模型管理器

持有每个模型的下载状态，驱动 下载 -> 校验 -> 解压 -> 提升 的流程，
并提供请求下载、取消、删除、查询等命令。

所有状态修改都在事件循环中进行；哈希计算和解压放到工作线程中。
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Set

import aiohttp
from loguru import logger

from modelfetch import manifest as manifest_loader
from modelfetch.archive.extractor import SecureExtractor
from modelfetch.download.fetcher import ContentFetcher
from modelfetch.download.queue import DownloadQueue, Priority
from modelfetch.download.verifier import FileVerifier
from modelfetch.events import EventBus, EventType, ModelEvent, ProgressThrottle
from modelfetch.exceptions import (
    CANCELLED_ERRORS,
    ConfigError,
    ExtractError,
    FetchCancelledError,
    FetchNetworkError,
    FetchSizeMismatchError,
    FetchTimeoutError,
    ModelBusyError,
    ModelFetchError,
    ModelStateError,
    VerifyError,
)
from modelfetch.manifest import DigestTable
from modelfetch.models.config import ModelFetchConfig
from modelfetch.models.manifest import ModelEntry
from modelfetch.models.state import DownloadState, ModelPhase
from modelfetch.storage import ResourceLayout, remove_path
from modelfetch.utils import format_bytes

# 这些失败说明暂存数据本身不可信，不再用于续传
_DISCARD_PARTIAL_ERRORS = (FetchSizeMismatchError, VerifyError, ExtractError)
_RETRYABLE_ERRORS = (FetchTimeoutError, FetchNetworkError)


@dataclass
class DownloadStats:
    """下载统计"""

    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: int = 0
    bytes_downloaded: int = 0


@dataclass
class _Job:
    cancel_event: asyncio.Event
    future: asyncio.Future


class ModelManager:
    """模型管理器"""

    def __init__(
        self,
        table: DigestTable,
        config: Optional[ModelFetchConfig] = None,
        layout: Optional[ResourceLayout] = None,
        event_bus: Optional[EventBus] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config or ModelFetchConfig()
        self.table = table
        self.layout = layout or ResourceLayout(self.config.storage.root)
        self.fetcher = ContentFetcher(self.config.network, session=session)
        self.verifier = FileVerifier()
        self.extractor = SecureExtractor(self.layout, self.verifier)
        self.events = event_bus or EventBus()
        self.stats = DownloadStats()

        self.queue: Optional[DownloadQueue] = None
        self._states: Dict[str, DownloadState] = {
            model_id: DownloadState(model_id=model_id, bytes_total=entry.size_bytes)
            for model_id, entry in table.items()
        }
        self._jobs: Dict[str, _Job] = {}
        self._trusted_partials: Set[str] = set()
        self._workers: List[asyncio.Task] = []
        self._started = False

    @classmethod
    def from_config(cls, config: ModelFetchConfig, **kwargs) -> "ModelManager":
        """根据配置加载清单并创建管理器"""
        if config.manifest is None:
            raise ConfigError("未配置模型清单 (manifest)")
        table = manifest_loader.load(config.manifest)
        return cls(table, config, **kwargs)

    # === 生命周期 ===

    async def start(self):
        """启动管理器：整理资源目录并启动工作协程"""
        if self._started:
            return

        self.layout.ensure()
        self.layout.clear_extracting()
        await self._recover()

        self.queue = DownloadQueue()
        self._workers = [
            asyncio.create_task(self._worker(), name=f"modelfetch-worker-{i}")
            for i in range(self.config.max_concurrent)
        ]
        self._started = True
        logger.info(
            f"[启动] 模型管理器启动，最大并发数: {self.config.max_concurrent}，"
            f"资源目录: {self.layout.root}"
        )

    async def stop(self):
        """停止管理器，未完成的任务以取消结束（暂存文件保留）"""
        logger.debug("[停止] 正在停止模型管理器...")
        for job in self._jobs.values():
            job.cancel_event.set()
        for worker in self._workers:
            worker.cancel()

        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
            self._workers.clear()

        for model_id, job in list(self._jobs.items()):
            self._abort_job(model_id, job)

        await self.fetcher.close()
        self._started = False
        logger.debug("[停止] 模型管理器已停止")

    async def __aenter__(self):
        """异步上下文管理器入口"""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """异步上下文管理器出口"""
        await self.stop()

    async def _recover(self):
        """
        启动时检查资源目录

        暂存区中的文件一律视为不可信：大小与清单一致且 SHA-256 通过的保留
        （之后无需联网），其余全部删除。
        """
        by_partial = {
            self.layout.partial_path(entry).name: entry for entry in self.table.values()
        }

        for path in self.layout.list_partials():
            entry = by_partial.get(path.name)
            if entry is None or not path.is_file():
                logger.warning(f"[清理] 删除未知的暂存文件: {path.name}")
                remove_path(path)
                continue

            if self.layout.is_installed(entry):
                logger.info(f"[清理] '{entry.id}' 已安装，删除残留的暂存文件")
                remove_path(path)
                continue

            size = path.stat().st_size
            if size != entry.size_bytes:
                logger.info(
                    f"[清理] 删除不完整的暂存文件: {path.name} "
                    f"({format_bytes(size)}/{format_bytes(entry.size_bytes)})"
                )
                remove_path(path)
                continue

            try:
                await self.verifier.verify(path, entry)
            except VerifyError as e:
                logger.warning(f"[清理] 暂存文件校验失败，删除: {path.name} ({e})")
                remove_path(path)
                continue

            self._trusted_partials.add(entry.id)
            state = self._states[entry.id]
            state.bytes_downloaded = size
            state.staging_path = str(path)
            logger.info(f"[恢复] '{entry.id}' 的暂存文件完整，可直接安装")

        for entry in self.table.values():
            if self.layout.is_installed(entry):
                state = self._states[entry.id]
                state.phase = ModelPhase.READY
                state.bytes_downloaded = entry.size_bytes

    def _ensure_started(self):
        if not self._started or self.queue is None:
            raise ModelStateError("模型管理器尚未启动")

    # === 命令 ===

    async def request_download(
        self, model_id: str, priority: Priority = Priority.NORMAL
    ) -> DownloadState:
        """
        请求下载模型

        已就绪的模型直接返回，不产生网络请求；正在处理的模型返回当前状态，
        不会创建新任务。

        Raises:
            UnknownModelError: 模型不在清单中
            ModelBusyError: 模型正在删除
        """
        entry = self.table.lookup(model_id)
        self._ensure_started()
        state = self._states[model_id]

        if state.phase == ModelPhase.READY:
            if self.layout.is_installed(entry):
                self.stats.skipped += 1
                logger.info(f"[跳过] '{model_id}' 已就绪")
                return state.snapshot()
            state.phase = ModelPhase.NOT_DOWNLOADED

        if model_id in self._jobs:
            return state.snapshot()

        if state.phase == ModelPhase.DELETING:
            raise ModelBusyError(
                f"模型正在删除: {model_id}", context={"model_id": model_id}
            )

        loop = asyncio.get_running_loop()
        self._jobs[model_id] = _Job(
            cancel_event=asyncio.Event(), future=loop.create_future()
        )
        state.phase = ModelPhase.QUEUED
        state.bytes_total = entry.size_bytes
        state.last_error = None
        state.cancel_requested = False
        self.queue.put(model_id, priority)
        self.stats.total += 1
        logger.debug(f"[队列] '{model_id}' 已加入下载队列")

        await self._emit_state(state)
        return state.snapshot()

    async def wait(self, model_id: str) -> DownloadState:
        """等待模型当前任务结束，返回终态快照；没有任务时返回当前状态"""
        self.table.lookup(model_id)
        job = self._jobs.get(model_id)
        if job is None:
            return self._states[model_id].snapshot()
        return await asyncio.shield(job.future)

    async def download(
        self, model_id: str, priority: Priority = Priority.NORMAL
    ) -> DownloadState:
        """
        请求下载并等待结束

        Raises:
            ModelFetchError: 任务以失败结束时抛出保存的错误
        """
        await self.request_download(model_id, priority)
        result = await self.wait(model_id)
        if result.phase == ModelPhase.FAILED and result.last_error is not None:
            raise result.last_error
        return result

    def cancel_download(self, model_id: str) -> bool:
        """
        取消下载（协作式，在数据块、校验前和归档条目之间生效）

        Returns:
            是否有正在处理的任务被标记取消
        """
        self.table.lookup(model_id)
        job = self._jobs.get(model_id)
        if job is None:
            return False

        self._states[model_id].cancel_requested = True
        job.cancel_event.set()
        logger.info(f"[取消] 已请求取消 '{model_id}'")
        return True

    async def delete_model(self, model_id: str) -> None:
        """
        删除模型的成品和暂存文件

        失败的模型即使没有残留文件也可以删除，状态回到未下载。

        Raises:
            ModelBusyError: 模型正在处理
            ModelStateError: 没有可删除的文件，且模型不处于失败状态
        """
        entry = self.table.lookup(model_id)
        state = self._states[model_id]
        if model_id in self._jobs or state.phase.in_flight:
            raise ModelBusyError(
                f"模型正在处理中，无法删除: {model_id}",
                context={"model_id": model_id, "phase": state.phase.value},
            )

        final = self.layout.final_path(entry)
        partial = self.layout.partial_path(entry)
        on_disk = final.exists() or final.is_symlink() or partial.exists()
        if not on_disk and state.phase != ModelPhase.FAILED:
            raise ModelStateError(
                f"没有可删除的模型文件: {model_id}", context={"model_id": model_id}
            )

        previous = state.phase
        await self._set_phase(state, ModelPhase.DELETING)
        try:
            await asyncio.to_thread(self.layout.remove_installed, entry)
            self.layout.remove_partial(entry)
        except OSError as e:
            state.phase = previous
            error = ModelFetchError(
                f"删除模型失败: {e}", context={"model_id": model_id}
            )
            logger.error(f"[错误] {error}")
            await self._emit_state(state)
            raise error from e

        self._trusted_partials.discard(model_id)
        state.phase = ModelPhase.NOT_DOWNLOADED
        state.bytes_downloaded = 0
        state.last_error = None
        state.staging_path = None
        state.cancel_requested = False
        logger.success(f"[完成] 已删除模型 '{model_id}'")

        await self._emit_state(state)
        await self.events.emit(ModelEvent(EventType.DELETED, model_id))

    def query_status(self, model_id: str) -> DownloadState:
        """查询模型状态"""
        self.table.lookup(model_id)
        return self._states[model_id].snapshot()

    def statuses(self) -> Dict[str, DownloadState]:
        """查询全部模型状态"""
        return {model_id: state.snapshot() for model_id, state in self._states.items()}

    def get_model_path(self, model_id: str) -> Optional[Path]:
        """获取已就绪模型的路径，未就绪时返回 None"""
        entry = self.table.lookup(model_id)
        if self._states[model_id].phase != ModelPhase.READY:
            return None
        if not self.layout.is_installed(entry):
            return None
        return self.layout.final_path(entry)

    def get_stats(self) -> DownloadStats:
        """获取下载统计"""
        return self.stats

    # === 任务处理 ===

    async def _worker(self):
        """下载工作协程"""
        while True:
            try:
                task = await self.queue.get()
            except asyncio.CancelledError:
                break

            try:
                await self._run_job(task.model_id)
            finally:
                self.queue.task_done()

    async def _run_job(self, model_id: str):
        job = self._jobs.get(model_id)
        if job is None:
            return
        entry = self.table[model_id]
        state = self._states[model_id]

        try:
            await self._process(entry, state, job)
        except asyncio.CancelledError:
            self._abort_job(model_id, job)
            raise
        except CANCELLED_ERRORS as e:
            await self._on_cancelled(entry, state, job, e)
        except ModelFetchError as e:
            await self._on_failed(entry, state, job, e)
        except Exception as e:
            logger.exception(f"[错误] 处理 '{model_id}' 时出现未预期的错误: {e}")
            error = ModelFetchError(
                f"内部错误: {e}",
                context={"model_id": model_id, "type": type(e).__name__},
            )
            await self._on_failed(entry, state, job, error)
        else:
            await self._on_ready(entry, state, job)

    async def _process(self, entry: ModelEntry, state: DownloadState, job: _Job):
        partial = self.layout.partial_path(entry)
        state.staging_path = str(partial)
        self._check_cancel(job, state)

        await self._set_phase(state, ModelPhase.DOWNLOADING)
        url = self.table.url_for(entry.id, self.config.base_url)
        await self._fetch_with_retry(entry, state, job, url, partial)

        self._check_cancel(job, state)
        await self._set_phase(state, ModelPhase.VERIFYING)
        await self.verifier.verify(partial, entry)
        logger.info(f"[校验] '{entry.id}' SHA-256 校验通过")

        self._check_cancel(job, state)
        if entry.archive:
            await self._set_phase(state, ModelPhase.EXTRACTING)
            await asyncio.to_thread(
                self.extractor.extract,
                partial,
                entry.members,
                self.layout.final_path(entry),
                job.cancel_event.is_set,
            )
            remove_path(partial)
        else:
            self.layout.promote_file(partial, entry)

    async def _fetch_with_retry(
        self,
        entry: ModelEntry,
        state: DownloadState,
        job: _Job,
        url: str,
        partial: Path,
    ) -> int:
        resume = entry.id in self._trusted_partials
        self._trusted_partials.add(entry.id)

        throttle = ProgressThrottle(self.config.progress_step)
        start_bytes = partial.stat().st_size if resume and partial.exists() else 0
        state.bytes_downloaded = start_bytes

        async def progress_sink(downloaded: int, total: int):
            self.stats.bytes_downloaded += max(0, downloaded - state.bytes_downloaded)
            state.bytes_downloaded = downloaded
            if throttle.should_emit(downloaded, total):
                await self.events.emit(
                    ModelEvent(
                        EventType.PROGRESS,
                        entry.id,
                        {
                            "bytes_downloaded": downloaded,
                            "bytes_total": total,
                            "progress": round(state.progress, 2),
                        },
                    )
                )

        max_retries = self.config.network.max_retries
        attempt = 0
        while True:
            try:
                return await self.fetcher.fetch(
                    url,
                    partial,
                    entry.size_bytes,
                    resume=resume or attempt > 0,
                    progress_sink=progress_sink,
                    cancel_event=job.cancel_event,
                )
            except _RETRYABLE_ERRORS as e:
                state.bytes_downloaded = e.bytes_downloaded
                self._check_cancel(job, state)
                if attempt >= max_retries:
                    raise
                delay = self.config.network.retry_delay * (2**attempt)
                logger.warning(
                    f"[重试] 下载 '{entry.id}' 失败 (第 {attempt + 1} 次): {e}. "
                    f"{delay:.1f}s 后重试..."
                )
                throttle.reset()
                await self._sleep_unless_cancelled(delay, job, state)
                attempt += 1

    async def _sleep_unless_cancelled(
        self, delay: float, job: _Job, state: DownloadState
    ):
        try:
            await asyncio.wait_for(job.cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self._check_cancel(job, state)

    @staticmethod
    def _check_cancel(job: _Job, state: DownloadState):
        if job.cancel_event.is_set():
            raise FetchCancelledError(
                "下载已取消",
                bytes_downloaded=state.bytes_downloaded,
                context={"model_id": state.model_id},
            )

    # === 终态 ===

    async def _on_ready(self, entry: ModelEntry, state: DownloadState, job: _Job):
        self._trusted_partials.discard(entry.id)
        state.phase = ModelPhase.READY
        state.bytes_downloaded = entry.size_bytes
        state.last_error = None
        state.staging_path = None
        state.cancel_requested = False
        self.stats.completed += 1
        logger.success(f"[完成] '{entry.id}' 已就绪")

        self._finish_job(entry.id, job, state.snapshot())
        await self._emit_state(state)
        await self.events.emit(
            ModelEvent(
                EventType.READY,
                entry.id,
                {"path": str(self.layout.final_path(entry))},
            )
        )

    async def _on_failed(
        self,
        entry: ModelEntry,
        state: DownloadState,
        job: _Job,
        error: ModelFetchError,
    ):
        if isinstance(error, _DISCARD_PARTIAL_ERRORS):
            self._trusted_partials.discard(entry.id)
            if self.layout.remove_partial(entry):
                logger.info(f"[清理] 已删除 '{entry.id}' 的暂存文件")
            state.bytes_downloaded = 0
            state.staging_path = None

        state.phase = ModelPhase.FAILED
        state.last_error = error
        state.cancel_requested = False
        self.stats.failed += 1
        logger.error(f"[错误] '{entry.id}' 失败 ({error.kind}): {error}")

        self._finish_job(entry.id, job, state.snapshot())
        await self._emit_state(state)
        await self.events.emit(
            ModelEvent(EventType.FAILED, entry.id, {"error": error.to_dict()})
        )

    async def _on_cancelled(
        self,
        entry: ModelEntry,
        state: DownloadState,
        job: _Job,
        error: ModelFetchError,
    ):
        if not self.config.keep_partial_on_cancel:
            self._trusted_partials.discard(entry.id)
            self.layout.remove_partial(entry)

        state.phase = ModelPhase.CANCELLED
        state.last_error = None
        self.stats.cancelled += 1
        logger.info(f"[取消] '{entry.id}' 已取消")
        self._finish_job(entry.id, job, state.snapshot())
        await self._emit_state(state)
        await self.events.emit(
            ModelEvent(EventType.CANCELLED, entry.id, {"error": error.to_dict()})
        )

        # 事件处理器可能已经为该模型发起了新任务
        if entry.id not in self._jobs:
            self._reset_after_cancel(entry, state)
            await self._emit_state(state)

    def _abort_job(self, model_id: str, job: _Job):
        """管理器停止时结束未完成的任务（同步，不发事件）"""
        job.cancel_event.set()
        entry = self.table[model_id]
        state = self._states[model_id]
        state.phase = ModelPhase.CANCELLED
        self._finish_job(model_id, job, state.snapshot())
        self._reset_after_cancel(entry, state)

    def _reset_after_cancel(self, entry: ModelEntry, state: DownloadState):
        partial = self.layout.partial_path(entry)
        kept = entry.id in self._trusted_partials and partial.exists()
        state.phase = ModelPhase.NOT_DOWNLOADED
        state.bytes_downloaded = partial.stat().st_size if kept else 0
        state.staging_path = str(partial) if kept else None
        state.cancel_requested = False

    def _release_job(self, model_id: str):
        self._jobs.pop(model_id, None)
        if self.queue is not None:
            self.queue.release(model_id)

    def _finish_job(self, model_id: str, job: _Job, result: DownloadState):
        """交付任务结果，然后释放任务"""
        if not job.future.done():
            job.future.set_result(result)
        if self._jobs.get(model_id) is job:
            self._release_job(model_id)

    # === 事件 ===

    async def _set_phase(self, state: DownloadState, phase: ModelPhase):
        state.phase = phase
        await self._emit_state(state)

    async def _emit_state(self, state: DownloadState):
        await self.events.emit(
            ModelEvent(EventType.STATE_CHANGED, state.model_id, state.to_dict())
        )
