"""
ModelFetch 数据模型包

包含配置模型、清单模型和下载状态定义。
"""

from modelfetch.models.config import (
    NetworkConfig,
    StorageConfig,
    ModelFetchConfig,
    get_default_resource_dir,
)
from modelfetch.models.manifest import ArchiveMember, ModelEntry
from modelfetch.models.state import ModelPhase, DownloadState

__all__ = [
    # 配置模型
    "NetworkConfig",
    "StorageConfig",
    "ModelFetchConfig",
    "get_default_resource_dir",
    # 清单模型
    "ArchiveMember",
    "ModelEntry",
    # 状态模型
    "ModelPhase",
    "DownloadState",
]
