"""
远程发布获取模块。

通过 GitHub API 获取发布信息、发布列表、最新提交和 nightly 之间的提交记录。
"""

import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from toolver.core.config_manager import Config
from toolver.core.interfaces import IReleaseFetcher
from toolver.core.version_token import TokenKind, VersionToken
from toolver.utils.logger import get_logger

logger = get_logger()

API_BASE = "https://api.github.com"
USER_AGENT = "toolver"

_FULL_COMMIT = re.compile(r"[0-9a-f]{40}")


class RemoteFetcherError(Exception):
    """远程获取错误异常。"""
    pass


class NetworkError(RemoteFetcherError):
    """网络错误异常。"""
    pass


class RateLimitError(RemoteFetcherError):
    """GitHub API 速率限制。"""

    def __init__(self):
        super().__init__(
            "已达到 GitHub API 速率限制，请稍后重试，"
            "或设置 GITHUB_TOKEN 环境变量以提高限额"
        )


class ReleaseNotFoundError(RemoteFetcherError):
    """远程不存在该发布。"""
    pass


@dataclass(frozen=True)
class ReleaseAsset:
    name: str
    url: str
    size: int = 0


@dataclass(frozen=True)
class ReleaseInfo:
    """远程发布信息。"""

    tag_name: str
    published_at: Optional[str] = None
    commit: Optional[str] = None
    assets: List[ReleaseAsset] = field(default_factory=list)

    @property
    def build_id(self) -> str:
        """区分同一标签不同构建的标识（nightly 标签会被反复发布）。"""
        if self.commit:
            return self.commit[:7]
        digits = "".join(ch for ch in (self.published_at or "") if ch.isdigit())
        return digits or "unknown"

    def find_asset(self, name: str) -> Optional[ReleaseAsset]:
        return next((asset for asset in self.assets if asset.name == name), None)

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "ReleaseInfo":
        commitish = payload.get("target_commitish") or ""
        assets = [
            ReleaseAsset(
                name=item.get("name", ""),
                url=item.get("browser_download_url", ""),
                size=int(item.get("size") or 0),
            )
            for item in payload.get("assets", []) or []
        ]
        return cls(
            tag_name=payload.get("tag_name", ""),
            published_at=payload.get("published_at"),
            commit=commitish if _FULL_COMMIT.fullmatch(commitish) else None,
            assets=assets,
        )


class RemoteFetcher(IReleaseFetcher):
    """
    远程发布获取器类。

    设置 GITHUB_TOKEN 环境变量后请求会带上 Bearer 认证头。
    """

    def __init__(self, config: Config, session: Optional[requests.Session] = None):
        """
        初始化远程发布获取器。

        参数:
            config: 配置
            session: requests 会话，为 None 时新建
        """
        self.config = config
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/vnd.github+json",
        }
        token = os.environ.get("GITHUB_TOKEN")
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{API_BASE}/repos/{self.config.repository}{path}"
        logger.debug(f"请求 {url}")
        try:
            response = self.session.get(
                url,
                headers=self._headers(),
                params=params,
                timeout=self.config.request_timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"请求 {url} 失败: {e}")
            raise NetworkError(f"请求 {url} 失败: {e}") from e

        if response.status_code in (403, 429):
            message = ""
            try:
                message = str(response.json().get("message", ""))
            except ValueError:
                pass
            if response.headers.get("X-RateLimit-Remaining") == "0" or "rate limit" in message.lower():
                raise RateLimitError()
        if response.status_code == 404:
            raise ReleaseNotFoundError(f"远程不存在: {url}")
        try:
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as e:
            raise NetworkError(f"请求 {url} 失败: {e}") from e
        except ValueError as e:
            raise RemoteFetcherError(f"无法解析 {url} 的响应: {e}") from e

    def _get_release(self, path: str) -> ReleaseInfo:
        payload = self._get_json(path)
        if not isinstance(payload, dict):
            raise RemoteFetcherError(f"发布信息格式无效: {path}")
        return ReleaseInfo.from_api(payload)

    def resolve(self, token: VersionToken) -> ReleaseInfo:
        """
        解析版本令牌对应的远程发布。

        latest 取 stable 和 nightly 中发布时间较新的一个。

        参数:
            token: 版本令牌

        返回:
            ReleaseInfo 实例

        抛出:
            ReleaseNotFoundError: 远程没有该版本
            RemoteFetcherError: 提交哈希版本没有预编译发布
        """
        if token.kind == TokenKind.STABLE:
            return self._get_release("/releases/latest")
        if token.kind == TokenKind.NIGHTLY:
            return self._get_release("/releases/tags/nightly")
        if token.kind == TokenKind.SEMANTIC:
            try:
                return self._get_release(f"/releases/tags/{token.canonical_name}")
            except ReleaseNotFoundError as e:
                raise ReleaseNotFoundError(f"远程不存在版本 {token}") from e
        if token.kind == TokenKind.LATEST:
            stable = self._get_release("/releases/latest")
            nightly = self._get_release("/releases/tags/nightly")
            newer = max((stable, nightly), key=lambda release: release.published_at or "")
            logger.info(f"latest 解析为 {newer.tag_name}")
            return newer
        raise RemoteFetcherError(f"提交 {token} 没有预编译发布，需要从源码构建")

    def list_releases(self) -> List[ReleaseInfo]:
        """获取远程发布列表（最多 100 个，按发布时间降序）。"""
        payload = self._get_json("/releases", params={"per_page": 100})
        if not isinstance(payload, list):
            raise RemoteFetcherError("发布列表格式无效")
        releases = [ReleaseInfo.from_api(item) for item in payload if isinstance(item, dict)]
        return sorted(releases, key=lambda release: release.published_at or "", reverse=True)

    def latest_commit(self) -> str:
        """
        获取默认分支最新提交的完整哈希。

        抛出:
            RemoteFetcherError: 响应中没有有效的提交哈希
        """
        payload = self._get_json("/commits/HEAD")
        sha = payload.get("sha") if isinstance(payload, dict) else None
        if not isinstance(sha, str) or not _FULL_COMMIT.fullmatch(sha):
            raise RemoteFetcherError("无法获取最新提交")
        logger.debug(f"默认分支最新提交 {sha}")
        return sha

    def commits_between(self, since: str, until: str) -> List[Dict[str, Any]]:
        """
        获取两个时间点之间的提交记录。

        返回:
            提交列表，每个元素包含 sha、message（首行）和 author
        """
        payload = self._get_json("/commits", params={"since": since, "until": until, "per_page": 100})
        if not isinstance(payload, list):
            raise RemoteFetcherError("提交列表格式无效")
        commits = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            commit = item.get("commit") or {}
            message = (commit.get("message") or "").splitlines()
            commits.append({
                "sha": item.get("sha", ""),
                "message": message[0] if message else "",
                "author": (commit.get("author") or {}).get("name", ""),
            })
        return commits
