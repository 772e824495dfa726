"""
通用工具函数
"""

import hashlib
import re
from pathlib import PurePosixPath
from typing import Optional

HASH_CHUNK_SIZE = 1024 * 1024

_HEX_DIGEST_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_DRIVE_RE = re.compile(r"^[A-Za-z]:")
_PLACEHOLDER_DIGESTS = {"deadbeef" * 8, "cafebabe" * 8}


def format_bytes(size: float) -> str:
    """格式化字节数"""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} PB"


def compute_sha256(file_path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """流式计算文件的 SHA-256（同步，供工作线程调用）"""
    sha256 = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def is_hex_digest(value: str) -> bool:
    """是否为 64 位十六进制 SHA-256"""
    return bool(_HEX_DIGEST_RE.match(value))


def is_placeholder_digest(value: str) -> bool:
    """
    检测开发阶段常见的占位哈希

    全部由同一个十六进制字符组成，或者是 deadbeef / cafebabe 重复。
    """
    lowered = value.lower()
    return len(set(lowered)) == 1 or lowered in _PLACEHOLDER_DIGESTS


def normalize_relative_path(name: str) -> Optional[PurePosixPath]:
    """
    规范化归档内/清单中的相对路径

    反斜杠视为分隔符，去掉空段和 ``.`` 段。

    Returns:
        规范化后的路径；路径只由 ``.`` 组成时返回 None

    Raises:
        ValueError: 绝对路径、盘符、NUL 字节或包含 ``..`` 段
    """
    if "\x00" in name:
        raise ValueError(f"路径包含 NUL 字节: {name!r}")

    raw = name.replace("\\", "/")
    if raw.startswith("/") or _DRIVE_RE.match(raw):
        raise ValueError(f"不允许绝对路径: {name!r}")

    parts = [part for part in raw.split("/") if part not in ("", ".")]
    if ".." in parts:
        raise ValueError(f"路径包含上级目录段: {name!r}")

    if not parts:
        return None
    return PurePosixPath(*parts)


def is_safe_filename(name: str) -> bool:
    """是否为单个安全的路径段（用作资源目录下的文件/目录名）"""
    try:
        normalized = normalize_relative_path(name)
    except ValueError:
        return False
    return normalized is not None and len(normalized.parts) == 1 and str(normalized) == name
