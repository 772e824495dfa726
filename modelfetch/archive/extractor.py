"""
安全解压器

按清单成员列表（白名单）解压 tar 系列归档：

1. 符号链接、硬链接和其他特殊条目直接拒绝
2. 条目路径规范化，绝对路径和 ``..`` 段视为路径穿越
3. 写入 ``extracting/`` 下的全新临时目录，写入前后检查真实路径
4. 不在白名单中或超过清单大小的文件立即拒绝
5. 全部成员校验通过后才重命名到成品目录

同步执行，由调用方放到工作线程中运行。
"""

import os
import shutil
import tarfile
import tempfile
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, Iterable, Optional, Set, Union

from loguru import logger

from modelfetch.download.verifier import FileVerifier
from modelfetch.exceptions import (
    ExtractCancelledError,
    ExtractError,
    MemberMismatchError,
    PathTraversalError,
    UnsupportedEntryTypeError,
    VerifyError,
)
from modelfetch.models.manifest import ArchiveMember
from modelfetch.storage import ResourceLayout, remove_path
from modelfetch.utils import HASH_CHUNK_SIZE, normalize_relative_path

PathLike = Union[str, Path]


def _is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def _collect_files(root: Path) -> Set[str]:
    files = set()
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            files.add((Path(dirpath) / name).relative_to(root).as_posix())
    return files


class SecureExtractor:
    """安全解压器"""

    def __init__(self, layout: ResourceLayout, verifier: Optional[FileVerifier] = None):
        self.layout = layout
        self.verifier = verifier or FileVerifier()

    def extract(
        self,
        archive_path: PathLike,
        expected_members: Iterable[ArchiveMember],
        destination_dir: PathLike,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> Path:
        """
        解压并提升归档

        Args:
            archive_path: 已校验的归档文件
            expected_members: 清单中的成员列表
            destination_dir: 成品目录
            should_cancel: 取消检查，条目之间调用

        Returns:
            成品目录

        Raises:
            ExtractError: 解压失败，成品区不变
        """
        archive_path = Path(archive_path)
        destination_dir = Path(destination_dir)
        members = {m.relative_path: m for m in expected_members}
        if not members:
            raise MemberMismatchError(
                "成员列表为空", context={"archive": archive_path.name}
            )

        self.layout.extracting_dir.mkdir(parents=True, exist_ok=True)
        temp_dir = Path(
            tempfile.mkdtemp(
                prefix=f"{destination_dir.name}.", dir=self.layout.extracting_dir
            )
        )
        logger.info(f"[解压] {archive_path.name} -> {destination_dir.name}")

        try:
            self._unpack(archive_path, members, temp_dir, should_cancel)
            model_root = self._locate_root(temp_dir, members, archive_path)
            self._verify_members(model_root, members, should_cancel)
            self._check_cancel(should_cancel)
            try:
                self.layout.promote_directory(model_root, destination_dir)
            except OSError as e:
                raise ExtractError(
                    f"提升解压目录失败: {e}",
                    context={"destination": str(destination_dir)},
                ) from e
        finally:
            remove_path(temp_dir)

        logger.success(f"[完成] '{destination_dir.name}' 解压完成 ({len(members)} 个文件)")
        return destination_dir

    @staticmethod
    def _check_cancel(should_cancel: Optional[Callable[[], bool]]) -> None:
        if should_cancel is not None and should_cancel():
            raise ExtractCancelledError("解压已取消")

    def _unpack(
        self,
        archive_path: Path,
        members: Dict[str, ArchiveMember],
        temp_dir: Path,
        should_cancel: Optional[Callable[[], bool]],
    ) -> None:
        temp_root = temp_dir.resolve()
        ancestors = {
            str(parent)
            for path in members
            for parent in PurePosixPath(path).parents
            if str(parent) != "."
        }
        written: Set[str] = set()

        try:
            with tarfile.open(archive_path, "r:*") as tar:
                for info in tar:
                    self._check_cancel(should_cancel)
                    self._check_entry_type(info)

                    try:
                        relative = normalize_relative_path(info.name)
                    except ValueError as e:
                        raise PathTraversalError(
                            f"归档条目路径不安全: {info.name!r}",
                            context={"entry": info.name},
                        ) from e
                    if relative is None:
                        continue

                    target = temp_dir.joinpath(*relative.parts)
                    if not _is_within(target.parent.resolve(), temp_root):
                        raise PathTraversalError(
                            f"归档条目逃逸出解压目录: {info.name!r}",
                            context={"entry": info.name},
                        )

                    if info.isdir():
                        self._check_directory(relative, ancestors, info.name)
                        target.mkdir(parents=True, exist_ok=True)
                        continue

                    self._check_file(relative, info, members, written)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    source = tar.extractfile(info)
                    if source is None:
                        raise ExtractError(
                            f"无法读取归档条目: {info.name!r}",
                            context={"entry": info.name},
                        )
                    with source, open(target, "xb") as out:
                        shutil.copyfileobj(source, out, HASH_CHUNK_SIZE)

                    if not _is_within(Path(os.path.realpath(target)), temp_root):
                        raise PathTraversalError(
                            f"归档条目写入位置逃逸出解压目录: {info.name!r}",
                            context={"entry": info.name},
                        )
                    written.add(relative.as_posix())
                    logger.debug(f"[解压] {relative.as_posix()} ({info.size} B)")
        except tarfile.TarError as e:
            raise ExtractError(
                f"归档损坏: {e}", context={"archive": archive_path.name}
            ) from e
        except FileExistsError as e:
            raise MemberMismatchError(
                f"归档中存在重复条目: {e.filename}",
                context={"archive": archive_path.name},
            ) from e
        except OSError as e:
            raise ExtractError(
                f"写入解压文件失败: {e}", context={"archive": archive_path.name}
            ) from e

    @staticmethod
    def _check_entry_type(info: tarfile.TarInfo) -> None:
        if info.issym() or info.islnk():
            raise UnsupportedEntryTypeError(
                f"归档包含链接条目: {info.name!r}",
                context={"entry": info.name, "link": info.linkname},
            )
        if not (info.isfile() or info.isdir()):
            raise UnsupportedEntryTypeError(
                f"不支持的归档条目类型: {info.name!r}",
                context={"entry": info.name, "type": info.type.decode("latin-1")},
            )

    @staticmethod
    def _check_directory(
        relative: PurePosixPath, ancestors: Set[str], name: str
    ) -> None:
        path = relative.as_posix()
        unwrapped = PurePosixPath(*relative.parts[1:]).as_posix()
        if len(relative.parts) == 1 or path in ancestors or unwrapped in ancestors:
            return
        raise MemberMismatchError(
            f"归档包含清单外的目录: {name!r}", context={"entry": name}
        )

    @staticmethod
    def _check_file(
        relative: PurePosixPath,
        info: tarfile.TarInfo,
        members: Dict[str, ArchiveMember],
        written: Set[str],
    ) -> None:
        path = relative.as_posix()
        if path in written:
            raise MemberMismatchError(
                f"归档中存在重复条目: {info.name!r}", context={"entry": info.name}
            )

        member = members.get(path)
        if member is None and len(relative.parts) > 1:
            member = members.get(PurePosixPath(*relative.parts[1:]).as_posix())
        if member is None:
            raise MemberMismatchError(
                f"归档包含清单外的文件: {info.name!r}", context={"entry": info.name}
            )
        if info.size > member.size_bytes:
            raise MemberMismatchError(
                f"归档条目大于清单大小: {info.name!r}",
                context={
                    "entry": info.name,
                    "expected_size": member.size_bytes,
                    "actual_size": info.size,
                },
            )

    @staticmethod
    def _locate_root(
        temp_dir: Path, members: Dict[str, ArchiveMember], archive_path: Path
    ) -> Path:
        """确定模型根目录：临时目录本身，或其中唯一的顶层目录"""
        expected = set(members)
        files = _collect_files(temp_dir)
        if files == expected:
            return temp_dir

        children = list(temp_dir.iterdir())
        if len(children) == 1 and children[0].is_dir():
            inner = children[0]
            inner_files = _collect_files(inner)
            if inner_files == expected:
                return inner
            files = inner_files

        missing = sorted(expected - files)
        unexpected = sorted(files - expected)
        raise MemberMismatchError(
            f"解压结果与清单不一致: {archive_path.name}",
            context={"missing": missing, "unexpected": unexpected},
        )

    def _verify_members(
        self,
        model_root: Path,
        members: Dict[str, ArchiveMember],
        should_cancel: Optional[Callable[[], bool]],
    ) -> None:
        for path, member in members.items():
            self._check_cancel(should_cancel)
            try:
                self.verifier.check(model_root / path, member)
            except VerifyError as e:
                raise MemberMismatchError(
                    f"成员校验失败: {path}",
                    context={"member": path, "reason": e.kind, **e.context},
                ) from e
