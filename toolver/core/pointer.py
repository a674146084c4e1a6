"""
激活指针模块。

提供两种激活指针策略：
- SymlinkStrategy: install_root/active 是指向安装目录的目录符号链接，代理入口是符号链接
- CopyStrategy: install_root/active.json 标记文件记录安装目录，代理入口是管理程序的副本

所有指针写入都先写到临时名称，再通过 os.replace 原子覆盖，
读取方永远不会看到缺失或半写入的指针。
"""

import os
import shutil
import stat
import uuid
from pathlib import Path
from typing import Optional

from toolver.core.interfaces import ILinkStrategy
from toolver.utils.fs_atomic import atomic_write_json, read_json, safe_replace
from toolver.utils.logger import get_logger
from toolver.utils.permission_manager import can_create_symlinks

logger = get_logger()

POINTER_NAME = "active"
MARKER_NAME = "active.json"


def _temp_name(path: Path) -> Path:
    return path.with_name(f".{path.name}.tmp-{os.getpid()}-{uuid.uuid4().hex[:8]}")


class SymlinkStrategy(ILinkStrategy):
    """基于目录符号链接的激活指针。"""

    def __init__(self, install_root: Path):
        self.install_root = Path(install_root)
        self.pointer_path = self.install_root / POINTER_NAME

    def read(self) -> Optional[Path]:
        if not self.pointer_path.is_symlink():
            return None
        target = Path(os.readlink(self.pointer_path))
        if not target.is_absolute():
            target = self.install_root / target
        return target

    def write(self, target: Path, version_name: str) -> None:
        self.install_root.mkdir(parents=True, exist_ok=True)
        temp = _temp_name(self.pointer_path)
        os.symlink(str(target), str(temp), target_is_directory=True)
        try:
            safe_replace(temp, self.pointer_path)
        except OSError:
            temp.unlink(missing_ok=True)
            raise
        logger.debug(f"激活指针 {self.pointer_path} -> {target} ({version_name})")

    def clear(self) -> None:
        if self.pointer_path.is_symlink():
            self.pointer_path.unlink()
            logger.debug(f"已删除激活指针 {self.pointer_path}")

    def install_proxy(self, executable: Path, name: str) -> Path:
        proxy = self.install_root / name
        temp = _temp_name(proxy)
        os.symlink(str(executable), str(temp))
        try:
            safe_replace(temp, proxy)
        except OSError:
            temp.unlink(missing_ok=True)
            raise
        return proxy

    def remove_proxy(self, path: Path) -> None:
        path.unlink(missing_ok=True)


class CopyStrategy(ILinkStrategy):
    """
    基于标记文件的激活指针。

    用于无法创建符号链接的环境（例如未开启开发者模式的 Windows 普通用户）。
    """

    def __init__(self, install_root: Path):
        self.install_root = Path(install_root)
        self.pointer_path = self.install_root / MARKER_NAME

    def read(self) -> Optional[Path]:
        data = read_json(self.pointer_path)
        if not isinstance(data, dict) or not isinstance(data.get("path"), str):
            return None
        return Path(data["path"])

    def write(self, target: Path, version_name: str) -> None:
        atomic_write_json(self.pointer_path, {"version": version_name, "path": str(target)})
        logger.debug(f"激活标记 {self.pointer_path} -> {target} ({version_name})")

    def clear(self) -> None:
        if self.pointer_path.exists():
            self.pointer_path.unlink()
            logger.debug(f"已删除激活标记 {self.pointer_path}")

    def install_proxy(self, executable: Path, name: str) -> Path:
        proxy = self.install_root / name
        temp = _temp_name(proxy)
        shutil.copy2(executable, temp)
        temp.chmod(temp.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        try:
            safe_replace(temp, proxy)
        except OSError:
            temp.unlink(missing_ok=True)
            raise
        return proxy

    def remove_proxy(self, path: Path) -> None:
        path.unlink(missing_ok=True)


def select_strategy(install_root: Path) -> ILinkStrategy:
    """
    为安装根目录选择激活指针策略。

    已存在的指针决定策略；否则能创建符号链接时使用 SymlinkStrategy。

    参数:
        install_root: 安装根目录

    返回:
        激活指针策略实例
    """
    install_root = Path(install_root)
    if (install_root / POINTER_NAME).is_symlink():
        return SymlinkStrategy(install_root)
    if (install_root / MARKER_NAME).exists():
        return CopyStrategy(install_root)

    probe_dir = install_root if install_root.is_dir() else install_root.parent
    while not probe_dir.is_dir() and probe_dir != probe_dir.parent:
        probe_dir = probe_dir.parent
    if can_create_symlinks(probe_dir):
        return SymlinkStrategy(install_root)
    logger.info("当前环境无法创建符号链接，使用标记文件记录激活版本")
    return CopyStrategy(install_root)
