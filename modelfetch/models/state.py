"""
下载状态模型
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional

from modelfetch.exceptions import ModelFetchError


class ModelPhase(Enum):
    """模型生命周期阶段"""

    NOT_DOWNLOADED = "not_downloaded"
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    EXTRACTING = "extracting"
    READY = "ready"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DELETING = "deleting"

    @property
    def in_flight(self) -> bool:
        """是否有任务正在处理该模型"""
        return self in _IN_FLIGHT


_IN_FLIGHT = frozenset(
    {
        ModelPhase.QUEUED,
        ModelPhase.DOWNLOADING,
        ModelPhase.VERIFYING,
        ModelPhase.EXTRACTING,
        ModelPhase.DELETING,
    }
)


@dataclass
class DownloadState:
    """单个模型的下载状态（由管理器独占修改，对外只提供快照）"""

    model_id: str
    phase: ModelPhase = ModelPhase.NOT_DOWNLOADED
    bytes_downloaded: int = 0
    bytes_total: int = 0
    last_error: Optional[ModelFetchError] = None
    staging_path: Optional[str] = None
    cancel_requested: bool = False

    @property
    def progress(self) -> float:
        """下载进度百分比"""
        if self.bytes_total <= 0:
            return 0.0
        return min(100.0, self.bytes_downloaded * 100.0 / self.bytes_total)

    def snapshot(self) -> "DownloadState":
        """返回状态副本"""
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "phase": self.phase.value,
            "bytes_downloaded": self.bytes_downloaded,
            "bytes_total": self.bytes_total,
            "progress": round(self.progress, 2),
            "error": self.last_error.to_dict() if self.last_error else None,
            "staging_path": self.staging_path,
            "cancel_requested": self.cancel_requested,
        }
