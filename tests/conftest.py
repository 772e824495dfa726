import asyncio
import hashlib
import io
import tarfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from modelfetch.manager import ModelManager
from modelfetch.manifest import load
from modelfetch.models import ModelFetchConfig
from modelfetch.storage import ResourceLayout


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def payload(size: int, seed: int = 0) -> bytes:
    """可重复的伪随机数据"""
    block = hashlib.sha256(f"modelfetch-{seed}".encode()).digest()
    return (block * (size // len(block) + 1))[:size]


def file_entry(model_id: str, data: bytes, **extra) -> dict:
    entry = {
        "id": model_id,
        "archive": False,
        "size_bytes": len(data),
        "sha256": sha256(data),
    }
    entry.update(extra)
    return entry


def archive_entry(
    model_id: str, archive_bytes: bytes, members: Dict[str, bytes], **extra
) -> dict:
    entry = {
        "id": model_id,
        "archive": True,
        "size_bytes": len(archive_bytes),
        "sha256": sha256(archive_bytes),
        "members": [
            {"path": path, "size_bytes": len(data), "sha256": sha256(data)}
            for path, data in members.items()
        ],
    }
    entry.update(extra)
    return entry


def file_info(name: str, data: bytes) -> tuple:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    return info, data


def dir_info(name: str) -> tuple:
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = 0o755
    return info, None


def link_info(name: str, target: str, hard: bool = False) -> tuple:
    info = tarfile.TarInfo(name)
    info.type = tarfile.LNKTYPE if hard else tarfile.SYMTYPE
    info.linkname = target
    return info, None


def build_tar(
    files: Optional[Dict[str, bytes]] = None,
    entries: Iterable[tuple] = (),
    mode: str = "w:gz",
) -> bytes:
    """构造 tar 归档，``entries`` 中的条目排在 ``files`` 之后"""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode=mode) as tar:
        items = [file_info(name, data) for name, data in (files or {}).items()]
        for info, data in items + list(entries):
            tar.addfile(info, io.BytesIO(data) if data is not None else None)
    return buffer.getvalue()


class ContentServer:
    """测试用内容服务器，可以关闭 Range 支持、暂停传输、模拟错误"""

    def __init__(self):
        self.files: Dict[str, bytes] = {}
        self.range_support = True
        self.chunk_size = 4096
        self.pause_after: Dict[str, int] = {}
        self.fail_first: Dict[str, int] = {}
        self.release = asyncio.Event()
        self.requests: List[dict] = []
        self.active = 0
        self.peak = 0
        self._server: Optional[TestServer] = None

    async def start(self):
        app = web.Application()
        app.router.add_get("/{name}", self._handle)
        self._server = TestServer(app)
        await self._server.start_server()

    async def close(self):
        self.release.set()
        await self._server.close()

    @property
    def base_url(self) -> str:
        return str(self._server.make_url("/")).rstrip("/")

    def url(self, name: str) -> str:
        return f"{self.base_url}/{name}"

    def request_count(self, name: str) -> int:
        return sum(1 for r in self.requests if r["name"] == name)

    async def _handle(self, request: web.Request) -> web.StreamResponse:
        name = request.match_info["name"]
        self.requests.append(
            {
                "name": name,
                "range": request.headers.get("Range"),
                "user_agent": request.headers.get("User-Agent"),
            }
        )

        if name not in self.files:
            return web.Response(status=404)
        if self.fail_first.get(name, 0) > 0:
            self.fail_first[name] -= 1
            return web.Response(status=503)

        data = self.files[name]
        start = 0
        status = 200
        headers = {}
        range_header = request.headers.get("Range")
        if range_header and self.range_support:
            start = int(range_header[len("bytes="):].rstrip("-"))
            status = 206
            headers["Content-Range"] = f"bytes {start}-{len(data) - 1}/{len(data)}"
        body = data[start:]
        headers["Content-Length"] = str(len(body))

        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            response = web.StreamResponse(status=status, headers=headers)
            await response.prepare(request)
            sent = 0
            for offset in range(0, len(body), self.chunk_size):
                limit = self.pause_after.get(name)
                if limit is not None and sent >= limit and not self.release.is_set():
                    await self.release.wait()
                chunk = body[offset : offset + self.chunk_size]
                await response.write(chunk)
                sent += len(chunk)
            await response.write_eof()
            return response
        finally:
            self.active -= 1


@pytest_asyncio.fixture
async def content_server():
    server = ContentServer()
    await server.start()
    yield server
    await server.close()


@pytest.fixture
def resource_dir(tmp_path: Path) -> Path:
    return tmp_path / "resources"


@pytest.fixture
def layout(resource_dir: Path) -> ResourceLayout:
    layout = ResourceLayout(resource_dir)
    layout.ensure()
    return layout


def make_config(base_url: str, resource_dir: Path, **overrides) -> ModelFetchConfig:
    network = {
        "connect_timeout": 5,
        "read_timeout": overrides.pop("read_timeout", 5),
        "max_retries": overrides.pop("max_retries", 2),
        "retry_delay": 0.01,
        "chunk_size": 4096,
    }
    general = {"base_url": base_url, "max_concurrent": 2}
    general.update(overrides)
    return ModelFetchConfig.from_dict(
        {
            "modelfetch": general,
            "network": network,
            "storage": {"resource_dir": str(resource_dir)},
        }
    )


def make_manager(
    entries: List[dict], base_url: str, resource_dir: Path, **overrides
) -> ModelManager:
    config = make_config(base_url, resource_dir, **overrides)
    return ModelManager(load({"models": entries}), config)
