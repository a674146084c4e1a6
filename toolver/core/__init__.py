"""
toolver 核心模块。

提供版本令牌解析、安装注册表、回滚存储、代理分发和版本管理功能。
"""

from .interfaces import ILinkStrategy, IReleaseFetcher, IArtifactDownloader, ISourceBuilder
from .version_token import VersionToken, TokenKind, ParseError, parse
from .config_manager import Config, ConfigManager, ConfigValidationError, ConfigLoadError
from .installed_version import InstalledVersion
from .pointer import SymlinkStrategy, CopyStrategy, select_strategy
from .registry import (
    InstallationRegistry, ActivationError, NotInstalledError, ActivationPermissionError,
    RemovalError, ActiveVersionInUseError, InUseError,
)
from .rollback_store import RollbackStore, RollbackSlot, RollbackError, NoRollbackAvailableError
from .dispatcher import (
    ProxyDispatcher, Invocation, InvocationKind, resolve_invocation,
    ActiveVersionError, NoneActiveError, BinaryMissingError,
)
from .remote_fetcher import RemoteFetcher, ReleaseInfo, ReleaseAsset, RemoteFetcherError, NetworkError, RateLimitError
from .download_manager import DownloadManager, DownloadManagerError, DownloadError, ChecksumError, ExtractionError
from .source_builder import SourceBuilder, BuildError
from .version_manager import (
    VersionManager, VersionManagerError, RunningInstanceError, SyncFileError,
    InstallStatus, InstallOutcome, UseOutcome,
)

__all__ = [
    "ILinkStrategy", "IReleaseFetcher", "IArtifactDownloader", "ISourceBuilder",
    "VersionToken", "TokenKind", "ParseError", "parse",
    "Config", "ConfigManager", "ConfigValidationError", "ConfigLoadError",
    "InstalledVersion",
    "SymlinkStrategy", "CopyStrategy", "select_strategy",
    "InstallationRegistry", "ActivationError", "NotInstalledError", "ActivationPermissionError",
    "RemovalError", "ActiveVersionInUseError", "InUseError",
    "RollbackStore", "RollbackSlot", "RollbackError", "NoRollbackAvailableError",
    "ProxyDispatcher", "Invocation", "InvocationKind", "resolve_invocation",
    "ActiveVersionError", "NoneActiveError", "BinaryMissingError",
    "RemoteFetcher", "ReleaseInfo", "ReleaseAsset", "RemoteFetcherError", "NetworkError", "RateLimitError",
    "DownloadManager", "DownloadManagerError", "DownloadError", "ChecksumError", "ExtractionError",
    "SourceBuilder", "BuildError",
    "VersionManager", "VersionManagerError", "RunningInstanceError", "SyncFileError",
    "InstallStatus", "InstallOutcome", "UseOutcome",
]
