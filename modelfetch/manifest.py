"""
模型清单（摘要表）

加载一次后只读，保存每个模型的大小、SHA-256 以及归档成员列表。
"""

import hashlib
import json
import tarfile
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

import toml
from loguru import logger

from modelfetch.exceptions import ManifestError, UnknownModelError
from modelfetch.models.manifest import ModelEntry
from modelfetch.utils import HASH_CHUNK_SIZE, compute_sha256, normalize_relative_path

ManifestSource = Union[str, Path, Mapping[str, Any], List[Any]]


class DigestTable(Mapping):
    """
    模型摘要表

    只读映射 ``id -> ModelEntry``，并发读取安全。
    """

    def __init__(self, entries: Mapping[str, ModelEntry]):
        self._entries = MappingProxyType(dict(entries))

    def __getitem__(self, model_id: str) -> ModelEntry:
        return self._entries[model_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"DigestTable({list(self._entries)})"

    def lookup(self, model_id: str) -> ModelEntry:
        """
        查找模型条目

        Raises:
            UnknownModelError: 模型不在清单中
        """
        try:
            return self._entries[model_id]
        except KeyError:
            raise UnknownModelError(model_id) from None

    def url_for(self, model_id: str, base_url: str) -> str:
        """获取模型的下载地址"""
        entry = self.lookup(model_id)
        if entry.url:
            return entry.url
        return f"{base_url.rstrip('/')}/{entry.source_name}"

    @classmethod
    def from_data(cls, data: Any) -> "DigestTable":
        """
        从解析好的清单数据创建摘要表

        接受 ``{"models": [...]}`` 或条目列表。
        """
        if isinstance(data, Mapping):
            if "models" not in data:
                raise ManifestError("清单缺少 models 字段")
            items = data["models"]
        else:
            items = data

        if not isinstance(items, list):
            raise ManifestError("清单的 models 必须是列表")

        entries: Dict[str, ModelEntry] = {}
        for item in items:
            entry = ModelEntry.from_dict(item)
            if entry.id in entries:
                raise ManifestError(
                    f"清单中存在重复的模型 id: {entry.id}",
                    context={"model_id": entry.id},
                )
            entries[entry.id] = entry

        filenames = [entry.filename for entry in entries.values()]
        if len(set(filenames)) != len(filenames):
            raise ManifestError("清单中存在重复的 filename")

        return cls(entries)


def load(source: ManifestSource) -> DigestTable:
    """
    加载模型清单

    Args:
        source: 清单文件路径（.json / .toml）、JSON 文本或解析好的数据

    Returns:
        DigestTable 实例

    Raises:
        ManifestError: 清单无法读取或内容不合法
    """
    if isinstance(source, (Mapping, list)):
        table = DigestTable.from_data(source)
        logger.debug(f"[清单] 已加载 {len(table)} 个模型")
        return table

    if isinstance(source, str) and source.lstrip().startswith(("{", "[")):
        try:
            data = json.loads(source)
        except json.JSONDecodeError as e:
            raise ManifestError(f"清单 JSON 解析失败: {e}") from e
        return load(data)

    path = Path(source)
    if not path.is_file():
        raise ManifestError(f"清单文件不存在: {path}", context={"path": str(path)})

    suffix = path.suffix.lower()
    try:
        if suffix == ".json":
            data = json.loads(path.read_text(encoding="utf-8"))
        elif suffix == ".toml":
            data = toml.loads(path.read_text(encoding="utf-8"))
        else:
            raise ManifestError(
                f"不支持的清单格式: {suffix}", context={"path": str(path)}
            )
    except (json.JSONDecodeError, toml.TomlDecodeError) as e:
        raise ManifestError(
            f"清单解析失败: {e}", context={"path": str(path)}
        ) from e
    except OSError as e:
        raise ManifestError(
            f"读取清单失败: {e}", context={"path": str(path)}
        ) from e

    table = DigestTable.from_data(data)
    logger.info(f"[清单] 从 {path.name} 加载了 {len(table)} 个模型")
    return table


def _hash_stream(stream) -> str:
    sha256 = hashlib.sha256()
    for chunk in iter(lambda: stream.read(HASH_CHUNK_SIZE), b""):
        sha256.update(chunk)
    return sha256.hexdigest()


def describe_artifact(
    path: Union[str, Path],
    model_id: Optional[str] = None,
    archive: bool = False,
) -> Dict[str, Any]:
    """
    为本地成品生成清单条目

    归档模型会列出其中所有普通文件；若所有文件位于同一个顶层目录下，
    该目录名作为 ``filename``，成员路径相对于该目录。

    Args:
        path: 本地文件路径
        model_id: 模型 id，默认取文件名
        archive: 是否为 tar 归档

    Returns:
        可直接写入清单的条目字典
    """
    path = Path(path)
    if not path.is_file():
        raise ManifestError(f"文件不存在: {path}", context={"path": str(path)})

    entry: Dict[str, Any] = {
        "id": model_id or path.name,
        "archive": archive,
        "size_bytes": path.stat().st_size,
        "sha256": compute_sha256(path),
    }
    if not archive:
        if model_id and model_id != path.name:
            entry["filename"] = path.name
        return entry

    members: List[Dict[str, Any]] = []
    try:
        with tarfile.open(path, "r:*") as tar:
            for info in tar:
                if not info.isfile():
                    continue
                try:
                    normalized = normalize_relative_path(info.name)
                except ValueError as e:
                    raise ManifestError(
                        f"归档包含不安全的路径: {info.name!r}",
                        context={"path": str(path)},
                    ) from e
                if normalized is None:
                    continue
                fileobj = tar.extractfile(info)
                if fileobj is None:
                    continue
                with fileobj:
                    digest = _hash_stream(fileobj)
                members.append(
                    {
                        "path": normalized.as_posix(),
                        "size_bytes": info.size,
                        "sha256": digest,
                    }
                )
    except tarfile.TarError as e:
        raise ManifestError(
            f"无法读取归档: {e}", context={"path": str(path)}
        ) from e

    if not members:
        raise ManifestError(f"归档中没有文件: {path}", context={"path": str(path)})

    tops = {m["path"].split("/", 1)[0] for m in members}
    if len(tops) == 1 and all("/" in m["path"] for m in members):
        top = tops.pop()
        entry["filename"] = top
        for m in members:
            m["path"] = m["path"].split("/", 1)[1]

    entry["members"] = sorted(members, key=lambda m: m["path"])
    return entry
