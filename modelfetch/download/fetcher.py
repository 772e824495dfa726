"""
内容下载器

把远端文件流式写入暂存文件（``*.partial``），支持 Range 断点续传、
连接/读取超时和协作式取消（等待数据时也能取消）。下载失败时暂存文件保留在原处，
是否删除由调用方决定。
"""

import asyncio
import inspect
import re
from pathlib import Path
from typing import Any, Callable, Optional, Tuple, Union

import aiofiles
import aiohttp
from loguru import logger

from modelfetch.exceptions import (
    FetchCancelledError,
    FetchError,
    FetchIOError,
    FetchNetworkError,
    FetchSizeMismatchError,
    FetchTimeoutError,
)
from modelfetch.models.config import NetworkConfig
from modelfetch.utils import format_bytes

ProgressSink = Callable[[int, int], Any]

_CONTENT_RANGE_RE = re.compile(r"^bytes\s+(\d+)-(\d+)/(\d+|\*)$")


def parse_content_range(header_value: str) -> Tuple[int, int, Optional[int]]:
    """
    解析 ``Content-Range`` 响应头

    Returns:
        ``(start, end, total)``，总大小未知（``*``）时 total 为 None

    Raises:
        ValueError: 格式或范围无效
    """
    match = _CONTENT_RANGE_RE.match(header_value.strip())
    if match is None:
        raise ValueError(f"无效的 Content-Range: {header_value!r}")

    start = int(match.group(1))
    end = int(match.group(2))
    total = None if match.group(3) == "*" else int(match.group(3))
    if end < start or (total is not None and end >= total):
        raise ValueError(f"Content-Range 范围无效: {header_value!r}")
    return start, end, total


def _size_on_disk(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


class ContentFetcher:
    """内容下载器"""

    def __init__(
        self,
        network: Optional[NetworkConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.network = network or NetworkConfig()
        self._session = session
        self._owned_session = session is None

    @property
    def session(self) -> aiohttp.ClientSession:
        """获取或创建 aiohttp session"""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(
                total=None,
                sock_connect=self.network.connect_timeout,
                sock_read=self.network.read_timeout,
            )
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"User-Agent": self.network.user_agent},
            )
            self._owned_session = True
        return self._session

    async def close(self):
        """关闭自己创建的 session"""
        if self._owned_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def fetch(
        self,
        url: str,
        partial_path: Union[str, Path],
        expected_size: int,
        resume: bool = True,
        progress_sink: Optional[ProgressSink] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> int:
        """
        下载文件到暂存路径

        Args:
            url: 下载地址
            partial_path: 暂存文件路径
            expected_size: 清单中的文件大小
            resume: 是否续传已有的暂存文件
            progress_sink: 进度回调 ``(已下载字节, 总字节)``，可以是协程函数
            cancel_event: 取消标志，等待数据和写入数据块之间都会检查

        Returns:
            磁盘上的字节数（成功时等于 expected_size）

        Raises:
            FetchError: 下载失败，暂存文件保留在原处
        """
        partial_path = Path(partial_path)
        filename = partial_path.name

        try:
            partial_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FetchIOError(
                f"无法创建暂存目录: {e}", context={"path": str(partial_path.parent)}
            ) from e

        existing = _size_on_disk(partial_path)
        if existing and (not resume or existing > expected_size):
            if existing > expected_size:
                logger.warning(
                    f"[重置] 暂存文件 '{filename}' 大于预期 "
                    f"({existing} > {expected_size})，重新下载"
                )
            try:
                partial_path.unlink()
            except OSError as e:
                raise FetchIOError(
                    f"无法删除暂存文件: {e}",
                    bytes_downloaded=existing,
                    context={"path": str(partial_path)},
                ) from e
            existing = 0

        if existing == expected_size:
            logger.info(f"[跳过] '{filename}' 已完整下载，无需请求")
            return existing

        self._check_cancel(cancel_event, existing, url)

        headers = {}
        if existing > 0:
            headers["Range"] = f"bytes={existing}-"
            logger.info(
                f"[续传] {filename}: 从 {format_bytes(existing)} 处继续下载"
            )
        else:
            logger.info(f"[开始] 下载: {filename} ({format_bytes(expected_size)})")

        downloaded = existing
        try:
            async with self.session.get(url, headers=headers) as response:
                offset = self._resolve_offset(response, existing, expected_size, url)
                downloaded = offset

                content_length = response.content_length
                if content_length is not None and offset + content_length != expected_size:
                    raise FetchSizeMismatchError(
                        f"服务端声明的大小与清单不一致: {filename}",
                        bytes_downloaded=existing,
                        context={
                            "url": url,
                            "expected_size": expected_size,
                            "declared_size": offset + content_length,
                        },
                    )

                mode = "ab" if offset else "wb"
                async with aiofiles.open(partial_path, mode) as f:
                    while True:
                        self._check_cancel(cancel_event, downloaded, url)
                        chunk = await self._read_chunk(
                            response, cancel_event, downloaded, url
                        )
                        if not chunk:
                            break
                        if downloaded + len(chunk) > expected_size:
                            raise FetchSizeMismatchError(
                                f"接收的数据超过预期大小: {filename}",
                                bytes_downloaded=downloaded,
                                context={"url": url, "expected_size": expected_size},
                            )
                        await f.write(chunk)
                        downloaded += len(chunk)
                        await self._notify(progress_sink, downloaded, expected_size)

            if downloaded != expected_size:
                raise FetchNetworkError(
                    f"传输提前结束: {filename} ({downloaded}/{expected_size})",
                    bytes_downloaded=downloaded,
                    context={"url": url, "expected_size": expected_size},
                )

        except FetchError:
            raise
        except asyncio.TimeoutError as e:
            raise FetchTimeoutError(
                f"下载超时: {filename}",
                bytes_downloaded=_size_on_disk(partial_path),
                context={"url": url},
            ) from e
        except aiohttp.ClientError as e:
            raise FetchNetworkError(
                f"网络错误: {e}",
                bytes_downloaded=_size_on_disk(partial_path),
                context={"url": url},
            ) from e
        except OSError as e:
            raise FetchIOError(
                f"写入暂存文件失败: {e}",
                bytes_downloaded=_size_on_disk(partial_path),
                context={"path": str(partial_path)},
            ) from e

        logger.debug(f"[完成] '{filename}' 下载完成 ({format_bytes(downloaded)})")
        return downloaded

    @staticmethod
    def _check_cancel(
        cancel_event: Optional[asyncio.Event], downloaded: int, url: str
    ) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise FetchCancelledError(
                "下载已取消", bytes_downloaded=downloaded, context={"url": url}
            )

    async def _read_chunk(
        self,
        response: aiohttp.ClientResponse,
        cancel_event: Optional[asyncio.Event],
        downloaded: int,
        url: str,
    ) -> bytes:
        """读取下一个数据块；等待数据期间取消立即生效，不必等到读取超时"""
        read = asyncio.ensure_future(response.content.read(self.network.chunk_size))
        if cancel_event is None:
            return await read

        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({read, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not read.done():
                read.cancel()

        if read.done() and not read.cancelled():
            return read.result()
        raise FetchCancelledError(
            "下载已取消", bytes_downloaded=downloaded, context={"url": url}
        )

    @staticmethod
    def _resolve_offset(
        response: aiohttp.ClientResponse, existing: int, expected_size: int, url: str
    ) -> int:
        """根据响应状态确定写入起点"""
        status = response.status

        if status == 200:
            if existing:
                logger.warning("[重置] 服务端不支持 Range，从头下载")
            return 0

        if status == 206:
            header = response.headers.get("Content-Range")
            if not header:
                raise FetchNetworkError(
                    "206 响应缺少 Content-Range",
                    bytes_downloaded=existing,
                    context={"url": url, "status": status},
                )
            try:
                start, _end, total = parse_content_range(header)
            except ValueError as e:
                raise FetchNetworkError(
                    str(e),
                    bytes_downloaded=existing,
                    context={"url": url, "content_range": header},
                ) from e
            if total is not None and total != expected_size:
                raise FetchSizeMismatchError(
                    "Content-Range 总大小与清单不一致",
                    bytes_downloaded=existing,
                    context={"url": url, "expected_size": expected_size, "total": total},
                )
            if start != existing:
                raise FetchNetworkError(
                    f"Content-Range 起点 {start} 与本地 {existing} 不一致",
                    bytes_downloaded=existing,
                    context={"url": url, "content_range": header},
                )
            return start

        if status == 416:
            raise FetchSizeMismatchError(
                "服务端拒绝请求的范围",
                bytes_downloaded=existing,
                context={"url": url, "status": status, "expected_size": expected_size},
            )

        raise FetchNetworkError(
            f"HTTP {status}",
            bytes_downloaded=existing,
            context={"url": url, "status": status},
        )

    @staticmethod
    async def _notify(
        progress_sink: Optional[ProgressSink], downloaded: int, total: int
    ) -> None:
        if progress_sink is None:
            return
        result = progress_sink(downloaded, total)
        if inspect.isawaitable(result):
            await result


__all__ = ["ContentFetcher", "ProgressSink", "parse_content_range"]
