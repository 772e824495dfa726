"""
资源目录布局

资源根目录下分为三个区域，位于同一文件系统，保证提升是一次重命名：

- ``models/``      已校验的成品（只通过重命名修改）
- ``staging/``     下载中的 ``*.partial`` 暂存文件（不可信）
- ``extracting/``  解压临时目录和待删除的回收目录（随时可清空）
"""

import os
import shutil
import time
from pathlib import Path
from typing import List, Union

from loguru import logger

from modelfetch.models.manifest import ModelEntry

PARTIAL_SUFFIX = ".partial"


class ResourceLayout:
    """资源目录布局"""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.models_dir = self.root / "models"
        self.staging_dir = self.root / "staging"
        self.extracting_dir = self.root / "extracting"

    def ensure(self) -> None:
        """创建目录结构"""
        for directory in (self.models_dir, self.staging_dir, self.extracting_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def final_path(self, entry: ModelEntry) -> Path:
        """成品路径（文件或目录）"""
        return self.models_dir / entry.filename

    def partial_path(self, entry: ModelEntry) -> Path:
        """暂存文件路径"""
        return self.staging_dir / f"{entry.filename}{PARTIAL_SUFFIX}"

    def is_installed(self, entry: ModelEntry) -> bool:
        """成品是否存在（类型与条目一致）"""
        path = self.final_path(entry)
        if path.is_symlink():
            return False
        return path.is_dir() if entry.archive else path.is_file()

    def list_partials(self) -> List[Path]:
        """列出暂存区中的所有条目"""
        if not self.staging_dir.is_dir():
            return []
        return sorted(self.staging_dir.iterdir())

    def _unique_name(self, prefix: str) -> Path:
        return self.extracting_dir / f".{prefix}-{os.getpid()}-{time.time_ns()}"

    def clear_extracting(self) -> None:
        """清空解压临时区（启动时调用）"""
        if not self.extracting_dir.exists():
            return
        for child in self.extracting_dir.iterdir():
            logger.info(f"[清理] 删除中断的解压目录: {child.name}")
            remove_path(child)

    def promote_file(self, staged: Path, entry: ModelEntry) -> Path:
        """把已校验的暂存文件重命名为成品"""
        final = self.final_path(entry)
        final.parent.mkdir(parents=True, exist_ok=True)
        os.replace(staged, final)
        return final

    def promote_directory(self, staged_dir: Path, final_dir: Path) -> None:
        """
        把已校验的目录重命名为成品

        已存在的旧目录先移到回收位置；重命名失败时恢复旧目录。
        """
        final_dir.parent.mkdir(parents=True, exist_ok=True)
        backup_dir = None

        if final_dir.exists() or final_dir.is_symlink():
            self.extracting_dir.mkdir(parents=True, exist_ok=True)
            backup_dir = self._unique_name(f"{final_dir.name}.backup")
            os.rename(final_dir, backup_dir)

        try:
            os.rename(staged_dir, final_dir)
        except OSError:
            if backup_dir is not None and backup_dir.exists() and not final_dir.exists():
                try:
                    os.rename(backup_dir, final_dir)
                except OSError as restore_error:
                    logger.error(f"[错误] 恢复旧模型目录失败: {restore_error}")
            raise

        if backup_dir is not None:
            remove_path(backup_dir)

    def remove_installed(self, entry: ModelEntry) -> bool:
        """
        删除成品

        先把成品重命名出 ``models/``，再删除，读取方不会看到删了一半的目录。

        Returns:
            是否删除了内容
        """
        final = self.final_path(entry)
        if not final.exists() and not final.is_symlink():
            return False

        self.extracting_dir.mkdir(parents=True, exist_ok=True)
        trash = self._unique_name(f"{final.name}.trash")
        os.rename(final, trash)
        remove_path(trash)
        return True

    def remove_partial(self, entry: ModelEntry) -> bool:
        """删除暂存文件，返回是否存在"""
        path = self.partial_path(entry)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True


def remove_path(path: Path) -> None:
    """删除文件或目录，失败时记录警告"""
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"[警告] 删除 {path} 失败: {e}")
