"""
清单数据模型

定义模型条目和归档成员，均为不可变对象。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from modelfetch.exceptions import ManifestError
from modelfetch.utils import (
    is_hex_digest,
    is_placeholder_digest,
    is_safe_filename,
    normalize_relative_path,
)


def _parse_digest(data: dict, where: str) -> str:
    digest = data.get("sha256", data.get("digest"))
    if not isinstance(digest, str) or not is_hex_digest(digest):
        raise ManifestError(
            f"{where} 的 sha256 无效", context={"entry": where, "digest": digest}
        )
    if is_placeholder_digest(digest):
        raise ManifestError(
            f"{where} 使用了占位 sha256（安全风险）",
            context={"entry": where, "digest": digest},
        )
    return digest.lower()


def _parse_size(data: dict, where: str) -> int:
    size = data.get("size_bytes")
    # bool 是 int 的子类
    if isinstance(size, bool) or not isinstance(size, int) or size <= 0:
        raise ManifestError(
            f"{where} 的 size_bytes 必须为正整数",
            context={"entry": where, "size_bytes": size},
        )
    return size


@dataclass(frozen=True)
class ArchiveMember:
    """归档成员"""

    relative_path: str
    size_bytes: int
    digest: str

    @classmethod
    def from_dict(cls, data: Any, model_id: str) -> "ArchiveMember":
        if not isinstance(data, dict):
            raise ManifestError(
                f"模型 {model_id} 的成员必须是对象", context={"model_id": model_id}
            )
        raw_path = data.get("relative_path", data.get("path"))
        where = f"模型 {model_id} 成员 {raw_path!r}"
        if not isinstance(raw_path, str):
            raise ManifestError(f"{where} 缺少路径", context={"model_id": model_id})
        try:
            normalized = normalize_relative_path(raw_path)
        except ValueError as e:
            raise ManifestError(
                f"{where} 路径不安全: {e}", context={"model_id": model_id}
            ) from e
        if normalized is None:
            raise ManifestError(f"{where} 路径为空", context={"model_id": model_id})

        return cls(
            relative_path=normalized.as_posix(),
            size_bytes=_parse_size(data, where),
            digest=_parse_digest(data, where),
        )


@dataclass(frozen=True)
class ModelEntry:
    """
    模型条目

    ``archive`` 为 True 时 ``members`` 非空，否则为空。
    ``filename`` 是资源目录中成品的名称（归档模型为目录名）。
    """

    id: str
    archive: bool
    size_bytes: int
    digest: str
    members: Tuple[ArchiveMember, ...] = ()
    filename: str = ""
    url: Optional[str] = None
    name: str = ""
    description: str = ""
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def source_name(self) -> str:
        """远端文件名（未配置 url 时与 base_url 拼接）"""
        if self.url:
            return self.url.rsplit("/", 1)[-1]
        return f"{self.filename}.tar.gz" if self.archive else self.filename

    @classmethod
    def from_dict(cls, data: Any) -> "ModelEntry":
        """
        从清单中的一项创建条目

        Raises:
            ManifestError: 字段缺失或不合法
        """
        if not isinstance(data, dict):
            raise ManifestError("清单条目必须是对象", context={"entry": data})

        model_id = data.get("id")
        if not isinstance(model_id, str) or not model_id.strip():
            raise ManifestError("清单条目缺少 id", context={"entry": data})
        where = f"模型 {model_id}"

        archive = data.get("archive", False)
        if not isinstance(archive, bool):
            raise ManifestError(
                f"{where} 的 archive 必须为布尔值", context={"model_id": model_id}
            )

        raw_members = data.get("members")
        if archive:
            if not isinstance(raw_members, list) or not raw_members:
                raise ManifestError(
                    f"{where} 是归档模型但缺少 members",
                    context={"model_id": model_id},
                )
            members = tuple(ArchiveMember.from_dict(m, model_id) for m in raw_members)
            paths = [m.relative_path for m in members]
            if len(set(paths)) != len(paths):
                raise ManifestError(
                    f"{where} 的 members 存在重复路径",
                    context={"model_id": model_id},
                )
        else:
            if raw_members:
                raise ManifestError(
                    f"{where} 不是归档模型，不应包含 members",
                    context={"model_id": model_id},
                )
            members = ()

        filename = data.get("filename") or model_id
        if not isinstance(filename, str) or not is_safe_filename(filename):
            raise ManifestError(
                f"{where} 的 filename 不安全: {filename!r}",
                context={"model_id": model_id},
            )

        url = data.get("url")
        if url is not None and (not isinstance(url, str) or not url.strip()):
            raise ManifestError(f"{where} 的 url 无效", context={"model_id": model_id})

        known = {
            "id", "archive", "size_bytes", "sha256", "digest", "members",
            "filename", "url", "name", "description",
        }
        return cls(
            id=model_id,
            archive=archive,
            size_bytes=_parse_size(data, where),
            digest=_parse_digest(data, where),
            members=members,
            filename=filename,
            url=url,
            name=str(data.get("name", "")),
            description=str(data.get("description", "")),
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_dict(self) -> Dict[str, Any]:
        """转换为清单格式（保留清单中的其他字段）"""
        result: Dict[str, Any] = dict(self.extra)
        result.update(
            {
                "id": self.id,
                "archive": self.archive,
                "filename": self.filename,
                "size_bytes": self.size_bytes,
                "sha256": self.digest,
            }
        )
        if self.url:
            result["url"] = self.url
        if self.name:
            result["name"] = self.name
        if self.description:
            result["description"] = self.description
        if self.archive:
            result["members"] = [
                {
                    "path": m.relative_path,
                    "size_bytes": m.size_bytes,
                    "sha256": m.digest,
                }
                for m in self.members
            ]
        return result
