"""Fake network session and install collaborators shared by the tests."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from conftest import write_executable
from toolver.core.interfaces import IArtifactDownloader, IReleaseFetcher, ISourceBuilder
from toolver.core.remote_fetcher import NetworkError, ReleaseInfo, ReleaseNotFoundError
from toolver.core.version_token import VersionToken


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        payload: Any = None,
        content: bytes = b"",
        headers: Optional[Dict[str, str]] = None,
    ):
        self.status_code = status_code
        self._payload = payload
        self.content = content if payload is None else json.dumps(payload).encode("utf-8")
        self.headers = dict(headers or {})
        self.headers.setdefault("content-length", str(len(self.content)))

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no json body")
        return self._payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error", response=self)

    def iter_content(self, chunk_size: int = 1024):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start:start + chunk_size]


class FakeSession:
    """Maps URLs to queued responses; an exception in the queue is raised instead."""

    def __init__(self, routes: Optional[Dict[str, List[Any]]] = None):
        self.routes = {url: list(responses) for url, responses in (routes or {}).items()}
        self.calls = []

    def add(self, url: str, *responses: Any) -> None:
        self.routes.setdefault(url, []).extend(responses)

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append((url, kwargs))
        queue = self.routes.get(url)
        if not queue:
            return FakeResponse(404, payload={"message": "Not Found"})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, BaseException):
            raise response
        return response


class FakeFetcher(IReleaseFetcher):
    def __init__(self, releases: Dict[str, ReleaseInfo]):
        self.releases = releases
        self.changelog_calls = []
        self.changelog_error = None
        self.head = "d" * 40
        self.head_calls = 0

    def resolve(self, token: VersionToken) -> ReleaseInfo:
        if token.canonical_name not in self.releases:
            raise ReleaseNotFoundError(f"no release {token}")
        return self.releases[token.canonical_name]

    def list_releases(self) -> List[ReleaseInfo]:
        return list(self.releases.values())

    def commits_between(self, since: str, until: str):
        self.changelog_calls.append((since, until))
        if self.changelog_error:
            raise self.changelog_error
        return [{"sha": "c" * 40, "message": "fix: something", "author": "dev"}]

    def latest_commit(self) -> str:
        self.head_calls += 1
        return self.head


class FakeDownloader(IArtifactDownloader):
    def __init__(self):
        self.downloads = []
        self.fail = False

    def download_and_extract(self, release: ReleaseInfo, staging: Path) -> None:
        self.downloads.append(release.tag_name)
        write_executable(staging / "bin" / "nvim", "exit 0")
        if self.fail:
            raise NetworkError("connection reset")
        (staging / "BUILD").write_text(f"{release.tag_name}-{release.build_id}", encoding="utf-8")


class FakeBuilder(ISourceBuilder):
    def __init__(self):
        self.built = []

    def build(self, token: VersionToken, staging: Path) -> str:
        self.built.append(token.commit)
        write_executable(staging / "bin" / "nvim", "exit 0")
        (staging / "BUILD").write_text(f"source-{token.canonical_name}", encoding="utf-8")
        return token.commit.ljust(40, "0")

