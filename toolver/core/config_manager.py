"""
配置管理器模块。

提供 toolver 配置的加载和验证功能。配置文件只读，支持 TOML 和 JSON 两种格式。
"""

import json
import os
import re
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from toolver.utils.logger import get_logger

logger = get_logger()


class ConfigValidationError(Exception):
    """配置验证错误异常。"""
    pass


class ConfigLoadError(Exception):
    """配置加载错误异常。"""
    pass


DEFAULT_REPOSITORY = "neovim/neovim"
DEFAULT_ROLLBACK_LIMIT = 3
MAX_ROLLBACK_LIMIT = 255

_ENV_REFERENCE = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")


def get_config_dir() -> Path:
    """
    获取平台配置目录路径。

    返回:
        配置目录的 Path 对象
    """
    if sys.platform == "win32":
        return Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
    return Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))


def get_data_dir() -> Path:
    """
    获取平台本地数据目录路径。

    返回:
        数据目录的 Path 对象
    """
    if sys.platform == "win32":
        return Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support"
    return Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))


def expand_env_references(value: str) -> str:
    """
    展开字符串中的 $NAME 环境变量引用和开头的 ~。

    参数:
        value: 原始字符串

    返回:
        展开后的字符串

    抛出:
        ConfigValidationError: 引用的环境变量不存在时抛出
    """
    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in os.environ:
            raise ConfigValidationError(f"配置中引用的环境变量 ${name} 不存在")
        return os.environ[name]

    return os.path.expanduser(_ENV_REFERENCE.sub(_replace, value))


@dataclass(frozen=True)
class Config:
    """只读配置。"""

    downloads_location: Path
    installation_location: Path
    rollback_limit: int = DEFAULT_ROLLBACK_LIMIT
    version_sync_file_location: Optional[Path] = None
    github_mirror: Optional[str] = None
    repository: str = DEFAULT_REPOSITORY
    asset_names: Dict[str, str] = field(default_factory=dict)
    bin_subdir: str = "bin"
    proxy_names: Optional[List[str]] = None
    main_binary: str = "nvim"
    enable_nightly_info: bool = True
    enable_release_build: bool = False
    ignore_running_instances: bool = True
    download_retry_count: int = 3
    request_timeout: float = 30
    lock_timeout: float = 10

    @property
    def rollback_dir(self) -> Path:
        return self.installation_location / "rollback"

    @property
    def lock_file(self) -> Path:
        return self.installation_location / "toolver.lock"


class ConfigManager:
    """
    配置管理器类。

    负责定位、读取和验证配置文件，产生不可变的 Config 对象。
    配置文件不存在时全部使用默认值。
    """

    CONFIG_ENV_VAR = "TOOLVER_CONFIG"

    SETTINGS_FIELDS = {
        "downloads_location": str,
        "installation_location": str,
        "rollback_limit": int,
        "version_sync_file_location": str,
        "github_mirror": str,
        "repository": str,
        "asset_names": dict,
        "bin_subdir": str,
        "proxy_names": list,
        "main_binary": str,
        "enable_nightly_info": bool,
        "enable_release_build": bool,
        "ignore_running_instances": bool,
        "download_retry_count": int,
        "request_timeout": (int, float),
        "lock_timeout": (int, float),
    }

    EXPANDED_FIELDS = (
        "downloads_location",
        "installation_location",
        "version_sync_file_location",
        "github_mirror",
    )

    def __init__(self, config_path: Optional[Path] = None):
        """
        初始化配置管理器。

        参数:
            config_path: 配置文件路径，为 None 时按默认规则查找
        """
        self._config_path = Path(config_path) if config_path else None
        self._config: Optional[Config] = None

    @property
    def config_path(self) -> Path:
        """
        获取配置文件路径。

        优先级：构造参数 > TOOLVER_CONFIG 环境变量 > config.toml > config.json。
        """
        if self._config_path is not None:
            return self._config_path
        override = os.environ.get(self.CONFIG_ENV_VAR)
        if override:
            return Path(override)
        config_dir = get_config_dir() / "toolver"
        toml_path = config_dir / "config.toml"
        json_path = config_dir / "config.json"
        if not toml_path.exists() and json_path.exists():
            return json_path
        return toml_path

    @property
    def config(self) -> Config:
        """
        获取配置（延迟加载）。

        返回:
            Config 实例
        """
        if self._config is None:
            self._config = self.load_config()
        return self._config

    def _read_raw(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            logger.debug(f"配置文件不存在，使用默认配置: {path}")
            return {}

        logger.debug(f"从文件加载配置: {path}")
        try:
            if path.suffix == ".json":
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            else:
                with open(path, "rb") as f:
                    data = tomllib.load(f)
        except (OSError, json.JSONDecodeError, tomllib.TOMLDecodeError, UnicodeDecodeError) as e:
            logger.error(f"加载配置文件失败: {e}")
            raise ConfigLoadError(f"无法读取配置文件 {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigLoadError(f"配置文件 {path} 的顶层必须是对象")
        return data

    def validate_config(self, raw: Dict[str, Any]) -> bool:
        """
        验证原始配置字典的有效性。

        参数:
            raw: 从文件读取的配置字典

        返回:
            验证通过返回 True

        抛出:
            ConfigValidationError: 配置验证失败时抛出
        """
        for key, value in raw.items():
            if key not in self.SETTINGS_FIELDS:
                raise ConfigValidationError(f"未知配置项: {key}")
            expected_type = self.SETTINGS_FIELDS[key]
            # bool 是 int 的子类，数值字段需要单独排除
            if isinstance(value, bool) and expected_type is not bool:
                raise ConfigValidationError(f"字段 '{key}' 的类型无效: {value!r}")
            if not isinstance(value, expected_type):
                raise ConfigValidationError(
                    f"字段 '{key}' 的类型无效，实际为 {type(value).__name__}"
                )

        limit = raw.get("rollback_limit", DEFAULT_ROLLBACK_LIMIT)
        if not 0 <= limit <= MAX_ROLLBACK_LIMIT:
            raise ConfigValidationError(
                f"rollback_limit 必须在 0 到 {MAX_ROLLBACK_LIMIT} 之间，实际为 {limit}"
            )
        for key in ("download_retry_count", "request_timeout", "lock_timeout"):
            if raw.get(key, 0) < 0:
                raise ConfigValidationError(f"{key} 不能为负数")
        for name in raw.get("proxy_names", []) or []:
            if not isinstance(name, str) or not name or "/" in name or "\\" in name:
                raise ConfigValidationError(f"无效的代理名称: {name!r}")
        for key, value in (raw.get("asset_names") or {}).items():
            if not isinstance(value, str):
                raise ConfigValidationError(f"asset_names.{key} 必须是字符串")

        logger.debug("配置验证通过")
        return True

    def load_config(self) -> Config:
        """
        加载并验证配置文件。

        返回:
            Config 实例

        抛出:
            ConfigLoadError: 配置文件无法读取或语法错误
            ConfigValidationError: 配置内容无效
        """
        raw = self._read_raw(self.config_path)
        self.validate_config(raw)

        values = dict(raw)
        for key in self.EXPANDED_FIELDS:
            if values.get(key):
                values[key] = expand_env_references(values[key])

        if values.get("downloads_location"):
            downloads = Path(values["downloads_location"])
            if not downloads.is_dir():
                raise ConfigValidationError(f"配置的下载目录不存在: {downloads}")
        else:
            downloads = get_data_dir() / "toolver"

        if values.get("installation_location"):
            installation = Path(values["installation_location"])
        else:
            installation = downloads / "toolver-bin"

        sync_file = values.get("version_sync_file_location")
        mirror = values.get("github_mirror")

        config = Config(
            downloads_location=downloads,
            installation_location=installation,
            rollback_limit=values.get("rollback_limit", DEFAULT_ROLLBACK_LIMIT),
            version_sync_file_location=Path(sync_file) if sync_file else None,
            github_mirror=mirror.rstrip("/") if mirror else None,
            repository=values.get("repository", DEFAULT_REPOSITORY),
            asset_names=dict(values.get("asset_names") or {}),
            bin_subdir=values.get("bin_subdir", "bin"),
            proxy_names=values.get("proxy_names"),
            main_binary=values.get("main_binary", "nvim"),
            enable_nightly_info=values.get("enable_nightly_info", True),
            enable_release_build=values.get("enable_release_build", False),
            ignore_running_instances=values.get("ignore_running_instances", True),
            download_retry_count=values.get("download_retry_count", 3),
            request_timeout=values.get("request_timeout", 30),
            lock_timeout=values.get("lock_timeout", 10),
        )
        logger.debug(
            f"配置加载成功: 下载目录 {config.downloads_location}，"
            f"安装目录 {config.installation_location}"
        )
        return config
