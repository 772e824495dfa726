"""
文件校验器

实现大小检查和 SHA-256 校验。哈希在工作线程中计算，不阻塞事件循环。
"""

import asyncio
import os
from pathlib import Path
from typing import Optional, Protocol, Union

from modelfetch.exceptions import VerifyDigestMismatchError, VerifySizeMismatchError
from modelfetch.utils import HASH_CHUNK_SIZE, compute_sha256

PathLike = Union[str, Path]


class ExpectedDigest(Protocol):
    """具有 size_bytes 和 digest 的对象（ModelEntry / ArchiveMember）"""

    size_bytes: int
    digest: str


class FileVerifier:
    """文件校验器"""

    def __init__(self, chunk_size: int = HASH_CHUNK_SIZE):
        self.chunk_size = chunk_size

    @staticmethod
    def get_size(file_path: PathLike) -> Optional[int]:
        """获取文件大小，文件不存在时返回 None"""
        try:
            return os.path.getsize(file_path)
        except OSError:
            return None

    def calc_sha256(self, file_path: PathLike) -> str:
        """计算文件的 SHA-256 值"""
        return compute_sha256(file_path, self.chunk_size)

    def check(self, file_path: PathLike, expected: ExpectedDigest) -> None:
        """
        同步校验文件

        先比较大小，大小不一致时不计算哈希。

        Args:
            file_path: 文件路径
            expected: 预期的大小和摘要

        Raises:
            VerifySizeMismatchError: 大小不一致或文件不存在
            VerifyDigestMismatchError: SHA-256 不一致
        """
        actual_size = self.get_size(file_path)
        if actual_size != expected.size_bytes:
            raise VerifySizeMismatchError(
                f"文件大小不一致: {os.path.basename(file_path)}",
                context={
                    "path": str(file_path),
                    "expected_size": expected.size_bytes,
                    "actual_size": actual_size,
                },
            )

        actual_digest = self.calc_sha256(file_path)
        if actual_digest.lower() != expected.digest.lower():
            raise VerifyDigestMismatchError(
                f"SHA-256 校验失败: {os.path.basename(file_path)}",
                context={
                    "path": str(file_path),
                    "expected": expected.digest.lower(),
                    "actual": actual_digest,
                },
            )

    async def verify(self, file_path: PathLike, expected: ExpectedDigest) -> None:
        """异步校验文件，哈希计算在工作线程中进行"""
        await asyncio.to_thread(self.check, file_path, expected)

    async def is_valid(self, file_path: PathLike, expected: ExpectedDigest) -> bool:
        """检查文件是否存在且校验通过"""
        try:
            await self.verify(file_path, expected)
        except (VerifySizeMismatchError, VerifyDigestMismatchError):
            return False
        return True
