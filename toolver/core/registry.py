"""
安装注册表模块。

下载目录和安装根目录下所有修改操作的唯一入口：
暂存、提升、激活、删除、清空以及代理入口的维护。
所有修改操作都在安装根目录的文件锁内执行。
"""

import os
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from toolver.core.config_manager import Config
from toolver.core.installed_version import InstalledVersion, read_installed, write_sidecar
from toolver.core.interfaces import ILinkStrategy
from toolver.core.pointer import MARKER_NAME, POINTER_NAME, select_strategy
from toolver.core.rollback_store import RollbackStore
from toolver.core.version_token import VersionToken
from toolver.utils.file_lock import FileLock
from toolver.utils.fs_atomic import link_tree, remove_tree
from toolver.utils.logger import get_logger
from toolver.utils.process_monitor import process_alive

logger = get_logger()

STAGING_PREFIX = ".staging-"
TRASH_PREFIX = ".trash-"


class ActivationError(Exception):
    """激活错误异常。"""
    pass


class NotInstalledError(ActivationError):
    """版本未安装。"""

    def __init__(self, token: VersionToken):
        self.token = token
        super().__init__(f"版本 {token} 未安装")


class ActivationPermissionError(ActivationError):
    """没有权限更新激活指针。"""

    def __init__(self, path: Path, reason: str):
        self.path = path
        super().__init__(
            f"没有权限更新激活指针 {path}: {reason}。"
            f"请检查安装目录权限，Windows 上可能需要管理员权限或开启开发者模式"
        )


class RemovalError(Exception):
    """删除错误异常。"""
    pass


class ActiveVersionInUseError(RemovalError):
    """要删除的版本正在使用。"""

    def __init__(self, token: VersionToken):
        self.token = token
        super().__init__(f"版本 {token} 正在使用，请先切换到其他版本或取消激活")


class InUseError(RemovalError):
    """文件被占用，无法删除。"""

    def __init__(self, path: Path, reason: str):
        self.path = path
        super().__init__(f"无法删除 {path}，文件可能正被其他进程占用: {reason}")


def _same_path(a: Path, b: Path) -> bool:
    try:
        return os.path.samefile(a, b)
    except OSError:
        return False


def _scratch_owner(name: str) -> Optional[int]:
    """从暂存/回收目录名 .<prefix>-<name>-<pid>-<hex> 中解析所属进程 ID。"""
    parts = name.rsplit("-", 2)
    if len(parts) != 3 or not parts[1].isdigit():
        return None
    return int(parts[1])


class InstallationRegistry:
    """
    安装注册表类。

    负责维护已安装版本和唯一的激活版本。
    """

    RESERVED_NAMES = {POINTER_NAME, MARKER_NAME, "rollback", "toolver.lock"}

    def __init__(self, config: Config, link_strategy: Optional[ILinkStrategy] = None):
        """
        初始化安装注册表。

        参数:
            config: 配置
            link_strategy: 激活指针策略，为 None 时根据环境自动选择
        """
        self.config = config
        self.downloads_root = config.downloads_location
        self.install_root = config.installation_location
        self._pointer = link_strategy
        self.lock = FileLock(config.lock_file, timeout=config.lock_timeout)
        self.rollback_store = RollbackStore(self)

    @property
    def pointer(self) -> ILinkStrategy:
        if self._pointer is None:
            self._pointer = select_strategy(self.install_root)
        return self._pointer

    def canonical_path(self, token: VersionToken) -> Path:
        return self.downloads_root / token.canonical_name

    def _scratch_path(self, prefix: str, token: VersionToken) -> Path:
        return self.downloads_root / f"{prefix}{token.canonical_name}-{os.getpid()}-{uuid.uuid4().hex[:8]}"

    def list(self) -> List[InstalledVersion]:
        """
        列出所有已安装版本（按目录名排序）。

        暂存和回收目录不会出现在列表中。
        """
        if not self.downloads_root.is_dir():
            return []
        versions = []
        for entry in sorted(self.downloads_root.iterdir(), key=lambda p: p.name):
            if not entry.is_dir() or entry.is_symlink():
                continue
            token = VersionToken.from_canonical(entry.name)
            if token is None:
                continue
            installed = read_installed(entry, token)
            if installed is not None:
                versions.append(installed)
        return versions

    def is_installed(self, token: VersionToken) -> bool:
        return self.canonical_path(token).is_dir()

    def get(self, token: VersionToken) -> InstalledVersion:
        """
        获取已安装版本信息。

        抛出:
            NotInstalledError: 版本未安装
        """
        path = self.canonical_path(token)
        if not path.is_dir():
            raise NotInstalledError(token)
        return read_installed(path, token)

    def active(self) -> Optional[InstalledVersion]:
        """
        获取当前激活版本。

        每次调用都重新读取激活指针；无指针或指针目标不存在时返回 None。
        """
        target = self.pointer.read()
        if target is None or not target.is_dir():
            return None
        return read_installed(target)

    def is_active(self, token: VersionToken) -> bool:
        target = self.pointer.read()
        return target is not None and _same_path(target, self.canonical_path(token))

    def staging_dir(self, token: VersionToken) -> Path:
        """
        创建新的暂存目录。

        暂存目录永远不会被当作已安装版本，中断的安装可以安全重试。
        """
        path = self._scratch_path(STAGING_PREFIX, token)
        path.mkdir(parents=True)
        logger.debug(f"创建暂存目录 {path}")
        return path

    def promote(
        self,
        token: VersionToken,
        staging: Path,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> InstalledVersion:
        """
        将暂存目录提升为规范安装目录（不激活）。

        规范目录已存在时整体替换。被替换的目录正在使用时，
        指针先转到其硬链接副本上，替换完成后再指回规范目录，
        指针在整个过程中始终可解析。nightly 被替换时，
        旧构建先归档为最新的回滚槽位，正在使用时该槽位同时充当副本。

        参数:
            token: 版本令牌
            staging: 暂存目录
            metadata: 写入元数据文件的附加信息

        返回:
            新的 InstalledVersion
        """
        with self.lock:
            write_sidecar(staging, token, metadata)
            canonical = self.canonical_path(token)

            if not canonical.exists():
                os.rename(staging, canonical)
                logger.info(f"已安装 {token} 到 {canonical}")
                return read_installed(canonical, token)

            was_active = self.is_active(token)
            slot = None
            if token.is_nightly:
                slot = self.rollback_store.archive(read_installed(canonical, token), prune=False)

            holding: Optional[Path] = None
            if was_active:
                if slot is not None:
                    holding = slot.install_path
                else:
                    holding = self._scratch_path(TRASH_PREFIX, token)
                    link_tree(canonical, holding)
                self.pointer.write(holding, token.canonical_name)

            trash = self._scratch_path(TRASH_PREFIX, token)
            os.rename(canonical, trash)
            os.rename(staging, canonical)
            if was_active:
                self.pointer.write(canonical, token.canonical_name)
            self._discard_tree(trash)
            if holding is not None and slot is None:
                self._discard_tree(holding)
            if slot is not None:
                self.rollback_store.prune()

            logger.info(f"已替换 {token} 的安装目录 {canonical}")
            return read_installed(canonical, token)

    def _discard_tree(self, path: Path) -> None:
        try:
            remove_tree(path)
        except OSError as e:
            logger.warning(f"删除 {path} 失败，将在下次运行时清理: {e}")

    def activate(self, token: VersionToken) -> InstalledVersion:
        """
        激活指定版本。

        激活已经激活的版本是成功的空操作。

        抛出:
            NotInstalledError: 版本未安装
            ActivationPermissionError: 没有权限写入激活指针
        """
        with self.lock:
            path = self.canonical_path(token)
            if not path.is_dir():
                raise NotInstalledError(token)
            if self.is_active(token):
                logger.info(f"{token} 已经是当前版本")
                return read_installed(path, token)
            try:
                self.pointer.write(path, token.canonical_name)
            except PermissionError as e:
                raise ActivationPermissionError(self.install_root, str(e)) from e
            logger.info(f"已激活 {token}")
            return read_installed(path, token)

    def deactivate(self) -> None:
        with self.lock:
            self.pointer.clear()
            logger.info("已取消激活")

    def remove(
        self,
        token: VersionToken,
        *,
        replacement: Optional[VersionToken] = None,
        deactivate: bool = False,
    ) -> None:
        """
        删除已安装版本。

        参数:
            token: 要删除的版本
            replacement: 要删除的版本正在使用时先激活的替代版本
            deactivate: 要删除的版本正在使用时先取消激活

        抛出:
            NotInstalledError: 版本未安装
            ActiveVersionInUseError: 版本正在使用且未指定替代版本或取消激活
            InUseError: 安装目录被占用
        """
        with self.lock:
            path = self.canonical_path(token)
            if not path.is_dir():
                raise NotInstalledError(token)

            if self.is_active(token):
                if replacement is not None and replacement != token:
                    self.activate(replacement)
                elif deactivate:
                    self.pointer.clear()
                else:
                    raise ActiveVersionInUseError(token)

            trash = self._scratch_path(TRASH_PREFIX, token)
            try:
                os.rename(path, trash)
            except OSError as e:
                raise InUseError(path, str(e)) from e
            try:
                remove_tree(trash)
            except OSError as e:
                raise InUseError(trash, str(e)) from e

            if token.is_nightly:
                self.rollback_store.discard()
            logger.info(f"已删除 {token}")

    def erase_all(self) -> bool:
        """
        删除所有安装、指针、回滚槽位、代理入口和两个根目录。

        返回:
            有内容被删除返回 True，已经是空状态返回 False

        抛出:
            InUseError: 部分文件无法删除
        """
        if not self.install_root.exists() and not self.downloads_root.exists():
            return False

        with self.lock:
            self.remove_proxies()
            self.pointer.clear()
            for path in (self.config.rollback_dir, self.install_root, self.downloads_root):
                if not path.exists():
                    continue
                try:
                    remove_tree(path)
                except OSError as e:
                    raise InUseError(path, str(e)) from e
                logger.info(f"已删除 {path}")
        return True

    def cleanup_stale_staging(self) -> List[Path]:
        """
        删除所属进程已退出的暂存和回收目录。

        返回:
            已删除的目录列表
        """
        if not self.downloads_root.is_dir():
            return []

        removed = []
        with self.lock:
            active = self.pointer.read()
            for entry in self.downloads_root.iterdir():
                if not entry.name.startswith((STAGING_PREFIX, TRASH_PREFIX)):
                    continue
                owner = _scratch_owner(entry.name)
                if owner is not None and process_alive(owner):
                    continue
                if active is not None and _same_path(active, entry):
                    continue
                try:
                    remove_tree(entry)
                except OSError as e:
                    logger.warning(f"清理 {entry} 失败: {e}")
                    continue
                removed.append(entry)
                logger.info(f"已清理残留目录 {entry}")
        return removed

    def proxies(self) -> List[Path]:
        """列出安装根目录中的代理入口。"""
        if not self.install_root.is_dir():
            return []
        return sorted(
            entry for entry in self.install_root.iterdir()
            if entry.name not in self.RESERVED_NAMES
            and not entry.name.startswith(".")
            and (entry.is_symlink() or entry.is_file())
        )

    def install_proxies(self, executable: Path, names: Iterable[str]) -> List[Path]:
        """
        为目标程序名创建代理入口，并删除不再需要的旧入口。

        参数:
            executable: 管理程序的可执行文件
            names: 目标程序名列表

        返回:
            代理入口路径列表
        """
        suffix = executable.suffix
        wanted = []
        for name in names:
            if suffix and not name.lower().endswith(suffix.lower()):
                name = f"{name}{suffix}"
            if name not in wanted and name not in self.RESERVED_NAMES:
                wanted.append(name)

        with self.lock:
            for existing in self.proxies():
                if existing.name not in wanted:
                    self.pointer.remove_proxy(existing)
            created = [self.pointer.install_proxy(executable, name) for name in wanted]
        logger.debug(f"已创建代理入口: {', '.join(wanted)}")
        return created

    def remove_proxies(self) -> None:
        with self.lock:
            for proxy in self.proxies():
                self.pointer.remove_proxy(proxy)
