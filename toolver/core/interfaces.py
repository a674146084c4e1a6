"""
核心模块抽象接口定义。

定义激活指针策略、远程发布获取、制品下载和源码构建的抽象接口。
核心模块只依赖这些接口，不依赖具体实现。
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from toolver.core.version_token import VersionToken


class ILinkStrategy(ABC):
    """激活指针策略抽象接口。"""

    @abstractmethod
    def read(self) -> Optional[Path]:
        """读取指针当前指向的安装目录，无指针返回 None。"""
        pass

    @abstractmethod
    def write(self, target: Path, version_name: str) -> None:
        """原子地将指针指向 target。"""
        pass

    @abstractmethod
    def clear(self) -> None:
        """删除指针。"""
        pass

    @abstractmethod
    def install_proxy(self, executable: Path, name: str) -> Path:
        """在安装根目录中创建名为 name 的代理入口。"""
        pass

    @abstractmethod
    def remove_proxy(self, path: Path) -> None:
        """删除代理入口。"""
        pass


class IReleaseFetcher(ABC):
    """远程发布获取器抽象接口。"""

    @abstractmethod
    def resolve(self, token: VersionToken) -> Any:
        """解析版本令牌对应的远程发布信息。"""
        pass

    @abstractmethod
    def list_releases(self) -> List[Any]:
        """获取远程发布列表。"""
        pass

    @abstractmethod
    def commits_between(self, since: str, until: str) -> List[Dict[str, Any]]:
        """获取两个时间点之间的提交记录。"""
        pass

    @abstractmethod
    def latest_commit(self) -> str:
        """获取默认分支最新提交的完整哈希。"""
        pass


class IArtifactDownloader(ABC):
    """制品下载器抽象接口。"""

    @abstractmethod
    def download_and_extract(self, release: Any, staging: Path) -> None:
        """下载发布制品并解压到暂存目录。"""
        pass


class ISourceBuilder(ABC):
    """源码构建器抽象接口。"""

    @abstractmethod
    def build(self, token: VersionToken, staging: Path) -> str:
        """从源码构建指定提交并安装到暂存目录，返回完整提交哈希。"""
        pass
