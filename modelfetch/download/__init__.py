"""
ModelFetch 下载层

包含内容下载、任务队列、文件校验等功能。
"""

from modelfetch.download.fetcher import ContentFetcher
from modelfetch.download.queue import DownloadQueue, Priority
from modelfetch.download.verifier import FileVerifier

__all__ = [
    "ContentFetcher",
    "DownloadQueue",
    "Priority",
    "FileVerifier",
]
