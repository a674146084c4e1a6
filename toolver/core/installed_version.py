"""
已安装版本模型。

每个安装目录中有一个 .toolver.json 元数据文件，记录安装时间、
是否从源码构建以及完整提交哈希等信息。
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from toolver.core.version_token import VersionToken
from toolver.utils.fs_atomic import atomic_write_json, read_json

SIDECAR_NAME = ".toolver.json"


@dataclass(frozen=True)
class InstalledVersion:
    """已安装版本信息，创建后不再修改。"""

    token: VersionToken
    install_path: Path
    built_from_source: bool = False
    full_commit_hash: Optional[str] = None
    installed_at: Optional[datetime] = None
    tag_name: Optional[str] = None
    published_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.token.canonical_name,
            "path": str(self.install_path),
            "built_from_source": self.built_from_source,
            "full_commit_hash": self.full_commit_hash,
            "installed_at": self.installed_at.isoformat() if self.installed_at else None,
            "tag_name": self.tag_name,
            "published_at": self.published_at,
        }


def write_sidecar(install_path: Path, token: VersionToken, metadata: Optional[Dict[str, Any]] = None) -> None:
    """
    写入安装目录的元数据文件。

    参数:
        install_path: 安装目录
        token: 版本令牌
        metadata: 附加元数据（built_from_source、full_commit_hash、tag_name、published_at）
    """
    metadata = metadata or {}
    atomic_write_json(install_path / SIDECAR_NAME, {
        "version": token.canonical_name,
        "installed_at": datetime.now(timezone.utc).isoformat(),
        "built_from_source": bool(metadata.get("built_from_source", False)),
        "full_commit_hash": metadata.get("full_commit_hash"),
        "tag_name": metadata.get("tag_name"),
        "published_at": metadata.get("published_at"),
    })


def read_installed(install_path: Path, token: Optional[VersionToken] = None) -> Optional[InstalledVersion]:
    """
    从安装目录读取已安装版本信息。

    元数据文件缺失时安装时间取目录修改时间，其他字段为空。

    参数:
        install_path: 安装目录
        token: 版本令牌，为 None 时从元数据或目录名推断

    返回:
        InstalledVersion 实例，无法确定版本时返回 None
    """
    data = read_json(install_path / SIDECAR_NAME)
    if not isinstance(data, dict):
        data = {}

    if token is None and isinstance(data.get("version"), str):
        token = VersionToken.from_canonical(data["version"])
    if token is None:
        token = VersionToken.from_canonical(install_path.name)
    if token is None:
        return None

    installed_at = None
    if isinstance(data.get("installed_at"), str):
        try:
            installed_at = datetime.fromisoformat(data["installed_at"])
        except ValueError:
            installed_at = None
    if installed_at is None:
        try:
            installed_at = datetime.fromtimestamp(install_path.stat().st_mtime, tz=timezone.utc)
        except OSError:
            installed_at = None

    return InstalledVersion(
        token=token,
        install_path=install_path,
        built_from_source=bool(data.get("built_from_source", False)),
        full_commit_hash=data.get("full_commit_hash"),
        installed_at=installed_at,
        tag_name=data.get("tag_name"),
        published_at=data.get("published_at"),
    )
