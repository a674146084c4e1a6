"""
版本管理器模块。

命令层：按顺序调用注册表、回滚存储和各协作者，实现
install、use、uninstall、sync、rollback、erase、list、list-remote、update、run 命令。
每个命令遇到第一个错误即中止。
"""

import shutil
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from toolver.core.config_manager import Config
from toolver.core.download_manager import DownloadManager
from toolver.core.dispatcher import MANAGEMENT_NAME, ProxyDispatcher
from toolver.core.installed_version import InstalledVersion
from toolver.core.interfaces import IArtifactDownloader, IReleaseFetcher, ISourceBuilder
from toolver.core.registry import InstallationRegistry, NotInstalledError
from toolver.core.remote_fetcher import ReleaseInfo, RemoteFetcher, RemoteFetcherError
from toolver.core.rollback_store import RollbackSlot, RollbackStore
from toolver.core.source_builder import SourceBuilder
from toolver.core.version_token import ParseError, VersionToken, is_rollback_name, parse
from toolver.utils.fs_atomic import atomic_write_text, remove_tree
from toolver.utils.logger import get_logger
from toolver.utils.process_monitor import find_processes_under

logger = get_logger()


class VersionManagerError(Exception):
    """版本管理错误异常。"""
    pass


class RunningInstanceError(VersionManagerError):
    """有正在运行的工具链实例。"""

    def __init__(self, pids: List[int]):
        self.pids = pids
        super().__init__(
            f"检测到正在运行的实例 (PID: {', '.join(str(p) for p in pids)})，"
            f"请先关闭它们，或在配置中设置 ignore_running_instances = true"
        )


class SyncFileError(VersionManagerError):
    """版本同步文件错误。"""
    pass


class InstallStatus(Enum):
    INSTALLED = "installed"
    UPDATED = "updated"
    ALREADY_INSTALLED = "already_installed"
    NIGHTLY_UP_TO_DATE = "nightly_up_to_date"


@dataclass
class InstallOutcome:
    status: InstallStatus
    installed: InstalledVersion
    changelog: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class UseOutcome:
    installed: InstalledVersion
    changed: bool
    install: Optional[InstallOutcome] = None


@dataclass
class RemoteRelease:
    release: ReleaseInfo
    installed: bool


def default_executable() -> Optional[Path]:
    """查找管理程序的可执行文件路径，用于创建代理入口。"""
    argv0 = sys.argv[0] if sys.argv else ""
    if argv0 and not argv0.endswith(".py"):
        located = shutil.which(argv0) or (argv0 if Path(argv0).exists() else None)
        if located:
            return Path(located).absolute()
    located = shutil.which(MANAGEMENT_NAME)
    return Path(located).absolute() if located else None


class VersionManager:
    """
    版本管理器类。

    本类作为协调者，将具体工作委托给注册表、回滚存储、分发器和各协作者。
    """

    def __init__(
        self,
        config: Config,
        registry: Optional[InstallationRegistry] = None,
        fetcher: Optional[IReleaseFetcher] = None,
        downloader: Optional[IArtifactDownloader] = None,
        builder: Optional[ISourceBuilder] = None,
        executable: Optional[Path] = None,
    ):
        """
        初始化版本管理器。

        参数:
            config: 配置
            registry: 安装注册表
            fetcher: 远程发布获取器，默认为 RemoteFetcher
            downloader: 制品下载器，默认为 DownloadManager
            builder: 源码构建器，默认为 SourceBuilder
            executable: 管理程序可执行文件，代理入口指向它
        """
        self.config = config
        self.registry = registry or InstallationRegistry(config)
        self.dispatcher = ProxyDispatcher(self.registry)
        self._fetcher = fetcher
        self._downloader = downloader
        self._builder = builder
        self._executable = executable

    @property
    def rollback_store(self) -> RollbackStore:
        return self.registry.rollback_store

    @property
    def fetcher(self) -> IReleaseFetcher:
        if self._fetcher is None:
            self._fetcher = RemoteFetcher(self.config)
        return self._fetcher

    @property
    def downloader(self) -> IArtifactDownloader:
        if self._downloader is None:
            self._downloader = DownloadManager(self.config)
        return self._downloader

    @property
    def builder(self) -> ISourceBuilder:
        if self._builder is None:
            self._builder = SourceBuilder(self.config)
        return self._builder

    def ensure_no_running_instances(self) -> None:
        """
        检查下载目录中的程序是否正在运行。

        抛出:
            RunningInstanceError: ignore_running_instances 为 false 且有实例在运行
        """
        if self.config.ignore_running_instances:
            return
        processes = find_processes_under(self.config.downloads_location)
        if processes:
            raise RunningInstanceError([p.pid for p in processes])

    def _discard_staging(self, staging: Path) -> None:
        if staging.exists():
            remove_tree(staging)

    def resolve_head(self, token: VersionToken) -> VersionToken:
        """
        将 head 令牌解析为默认分支最新提交的提交令牌，其他令牌原样返回。

        抛出:
            RemoteFetcherError: 无法获取最新提交
        """
        if not token.is_head:
            return token
        sha = self.fetcher.latest_commit()
        logger.info(f"head 解析为提交 {sha[:7]}")
        return VersionToken.commit_hash(sha)

    def _same_build(self, installed: InstalledVersion, release: ReleaseInfo) -> bool:
        if installed.full_commit_hash and release.commit:
            return installed.full_commit_hash == release.commit
        return bool(installed.published_at) and installed.published_at == release.published_at

    def install(self, token: VersionToken, force: bool = False) -> InstallOutcome:
        """
        安装指定版本（不激活）。

        参数:
            token: 版本令牌
            force: 已安装时是否重新安装

        返回:
            InstallOutcome 实例
        """
        self.ensure_no_running_instances()
        token = self.resolve_head(token)
        with self.registry.lock:
            self.registry.cleanup_stale_staging()
            previous = self.registry.get(token) if self.registry.is_installed(token) else None

            if previous is not None and not token.is_nightly and not force:
                logger.info(f"{token} 已安装")
                return InstallOutcome(InstallStatus.ALREADY_INSTALLED, previous)

            if token.is_commit:
                staging = self.registry.staging_dir(token)
                try:
                    full_hash = self.builder.build(token, staging)
                except Exception:
                    self._discard_staging(staging)
                    raise
                metadata = {"built_from_source": True, "full_commit_hash": full_hash, "tag_name": token.commit}
                installed = self.registry.promote(token, staging, metadata)
                status = InstallStatus.UPDATED if previous else InstallStatus.INSTALLED
                return InstallOutcome(status, installed)

            release = self.fetcher.resolve(token)
            if previous is not None and token.is_nightly and not force and self._same_build(previous, release):
                logger.info("nightly 已是最新")
                return InstallOutcome(InstallStatus.NIGHTLY_UP_TO_DATE, previous)

            staging = self.registry.staging_dir(token)
            try:
                self.downloader.download_and_extract(release, staging)
            except Exception:
                self._discard_staging(staging)
                raise
            metadata = {
                "tag_name": release.tag_name,
                "published_at": release.published_at,
                "full_commit_hash": release.commit,
            }
            installed = self.registry.promote(token, staging, metadata)

        changelog = []
        if token.is_nightly and previous is not None and self.config.enable_nightly_info:
            changelog = self._nightly_changelog(previous, release)
        status = InstallStatus.UPDATED if previous else InstallStatus.INSTALLED
        return InstallOutcome(status, installed, changelog)

    def _nightly_changelog(self, previous: InstalledVersion, release: ReleaseInfo) -> List[Dict[str, Any]]:
        if not previous.published_at or not release.published_at:
            return []
        try:
            return self.fetcher.commits_between(previous.published_at, release.published_at)
        except RemoteFetcherError as e:
            logger.warning(f"获取 nightly 更新日志失败: {e}")
            return []

    def proxy_names(self, installed: InstalledVersion) -> List[str]:
        if self.config.proxy_names:
            names = list(self.config.proxy_names)
        else:
            names = self.dispatcher.available_binaries(installed.install_path)
        return [name for name in names if name.lower() != MANAGEMENT_NAME]

    def refresh_proxies(self, installed: InstalledVersion) -> List[Path]:
        """为激活版本创建代理入口。"""
        executable = self._executable or default_executable()
        if executable is None:
            logger.warning("找不到 toolver 可执行文件，跳过创建代理入口")
            return []
        return self.registry.install_proxies(executable, self.proxy_names(installed))

    def _write_sync_file(self, token: VersionToken) -> None:
        path = self.config.version_sync_file_location
        if path is None:
            return
        try:
            current = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            current = ""
        if current == token.canonical_name:
            return
        atomic_write_text(path, token.canonical_name + "\n")
        logger.info(f"已将 {token} 写入同步文件 {path}")

    def use(self, token: VersionToken, install: bool = True) -> UseOutcome:
        """
        切换到指定版本，未安装时先安装。

        参数:
            token: 版本令牌
            install: 未安装时是否自动安装

        抛出:
            NotInstalledError: install 为 False 且版本未安装
        """
        self.ensure_no_running_instances()
        token = self.resolve_head(token)
        with self.registry.lock:
            if not token.is_nightly and self.registry.is_active(token):
                installed = self.registry.get(token)
                self._write_sync_file(token)
                logger.info(f"{token} 已经是当前版本")
                return UseOutcome(installed, changed=False)

            install_outcome = None
            if install:
                install_outcome = self.install(token)
            elif not self.registry.is_installed(token):
                raise NotInstalledError(token)

            was_active = self.registry.is_active(token)
            installed = self.registry.activate(token)
            self.refresh_proxies(installed)
            self._write_sync_file(token)

        changed = not was_active or (
            install_outcome is not None and install_outcome.status == InstallStatus.UPDATED
        )
        return UseOutcome(installed, changed=changed, install=install_outcome)

    def read_sync_file(self) -> VersionToken:
        """
        读取版本同步文件中的版本。

        抛出:
            SyncFileError: 未配置、文件缺失、内容为空或是回滚槽位名称
            ParseError: 内容不是有效版本
        """
        path = self.config.version_sync_file_location
        if path is None:
            raise SyncFileError("未配置 version_sync_file_location")
        try:
            text = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError as e:
            raise SyncFileError(f"同步文件不存在: {path}") from e
        if not text:
            raise SyncFileError(f"同步文件 {path} 为空")
        if is_rollback_name(text):
            raise SyncFileError(f"同步文件中的 '{text}' 是回滚版本名称，不能用于同步")
        return parse(text)

    def sync(self) -> UseOutcome:
        token = self.read_sync_file()
        logger.info(f"从同步文件读取版本 {token}")
        return self.use(token, install=True)

    def removable_versions(self) -> List[InstalledVersion]:
        """可供交互选择卸载的版本（不包括当前激活版本）。"""
        return [v for v in self.registry.list() if not self.registry.is_active(v.token)]

    def uninstall(self, tokens: Sequence[VersionToken]) -> List[VersionToken]:
        """
        依次卸载版本，遇到错误立即中止。

        返回:
            已卸载的版本列表
        """
        self.ensure_no_running_instances()
        removed = []
        with self.registry.lock:
            for token in tokens:
                token = self.resolve_head(token)
                self.registry.remove(token)
                removed.append(token)
        return removed

    def rollback(self, selector: Optional[str] = None) -> InstalledVersion:
        self.ensure_no_running_instances()
        with self.registry.lock:
            installed = self.rollback_store.rollback(selector)
            self.refresh_proxies(installed)
        return installed

    def erase(self) -> bool:
        return self.registry.erase_all()

    def list_installed(self) -> List[InstalledVersion]:
        return self.registry.list()

    def active(self) -> Optional[InstalledVersion]:
        return self.registry.active()

    def list_rollbacks(self) -> List[RollbackSlot]:
        return self.rollback_store.list()

    def list_remote(self) -> List[RemoteRelease]:
        """列出远程发布，并标记已安装的版本。"""
        installed = {v.token.canonical_name for v in self.registry.list()}
        result = []
        for release in self.fetcher.list_releases():
            try:
                name = parse(release.tag_name).canonical_name
            except ParseError:
                name = release.tag_name
            result.append(RemoteRelease(release, name in installed))
        return result

    def update(self, token: Optional[VersionToken] = None, update_all: bool = False) -> List[InstallOutcome]:
        """
        重新安装远程已更新的 stable 或 nightly。

        参数:
            token: 要更新的版本（stable 或 nightly）
            update_all: 更新所有已安装的 stable 和 nightly

        返回:
            每个被检查版本的 InstallOutcome
        """
        if token is not None and token not in (VersionToken.stable(), VersionToken.nightly()):
            raise VersionManagerError(f"只能更新 stable 或 nightly，不能更新 {token}")
        if token is not None:
            candidates = [token]
        elif update_all:
            candidates = [VersionToken.stable(), VersionToken.nightly()]
        else:
            raise VersionManagerError("请指定要更新的版本（stable 或 nightly）或使用 --all")

        outcomes = []
        for candidate in candidates:
            if not self.registry.is_installed(candidate):
                if token is not None:
                    raise NotInstalledError(candidate)
                continue
            if candidate.is_nightly:
                outcomes.append(self.install(candidate))
                continue
            installed = self.registry.get(candidate)
            release = self.fetcher.resolve(candidate)
            if installed.tag_name == release.tag_name:
                outcomes.append(InstallOutcome(InstallStatus.ALREADY_INSTALLED, installed))
            else:
                outcomes.append(self.install(candidate, force=True))
        return outcomes

    def run(self, token: VersionToken, args: Sequence[str], binary: Optional[str] = None) -> int:
        """不激活而直接运行指定版本的程序（默认主程序）。"""
        token = self.resolve_head(token)
        return self.dispatcher.run_version(token, binary or self.config.main_binary, args)
