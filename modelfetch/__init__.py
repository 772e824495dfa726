"""
ModelFetch - 模型下载、校验与安装

按清单下载模型文件，校验 SHA-256，安全解压归档并原子地安装到资源目录。
"""

from modelfetch.download.queue import Priority
from modelfetch.events import EventBus, EventType, ModelEvent
from modelfetch.exceptions import ModelFetchError
from modelfetch.manager import ModelManager
from modelfetch.manifest import DigestTable, describe_artifact, load
from modelfetch.models import DownloadState, ModelEntry, ModelFetchConfig, ModelPhase

__version__ = "0.1.0"

__all__ = [
    "ModelManager",
    "ModelFetchConfig",
    "DigestTable",
    "ModelEntry",
    "DownloadState",
    "ModelPhase",
    "Priority",
    "EventBus",
    "EventType",
    "ModelEvent",
    "ModelFetchError",
    "load",
    "describe_artifact",
]
