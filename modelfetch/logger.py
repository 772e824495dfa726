"""
日志模块

基于 loguru。控制台输出到 stderr（stdout 留给命令输出），
可选再写一份滚动日志文件。
"""

import os
import sys
from pathlib import Path
from typing import Optional, Union

from loguru import logger

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}"
FILE_LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {thread.name} | {message}"


def _resolve_level(level: Optional[str]) -> str:
    if level:
        return level.upper()
    return "DEBUG" if os.environ.get("MODELFETCH_DEBUG", "0") == "1" else "INFO"


def setup_logger(
    level: Optional[str] = None,
    sink=None,
    enqueue: bool = True,
    colorize: bool = True,
    log_file: Optional[Union[str, Path]] = None,
) -> None:
    """
    设置日志记录器

    Args:
        level: 日志级别；为空时读取 ``MODELFETCH_DEBUG`` 环境变量
        sink: 控制台输出目标，默认为 sys.stderr
        enqueue: 是否启用队列（哈希和解压在工作线程中记录日志）
        colorize: 是否启用颜色
        log_file: 额外的日志文件，按 10 MB 滚动，保留 5 份
    """
    level = _resolve_level(level)
    debug = level in ("TRACE", "DEBUG")

    logger.remove()
    logger.add(
        sink=sink if sink is not None else sys.stderr,
        format=LOG_FORMAT,
        enqueue=enqueue,
        level=level,
        colorize=colorize,
        backtrace=debug,
        diagnose=debug,
    )

    if log_file is not None:
        logger.add(
            str(log_file),
            format=FILE_LOG_FORMAT,
            level="DEBUG",
            rotation="10 MB",
            retention=5,
            encoding="utf-8",
            enqueue=enqueue,
        )

    if debug:
        logger.debug("DEBUG 模式已启用")


__all__ = ["logger", "setup_logger"]
