"""
版本令牌模块。

将用户输入的版本字符串解析为规范的版本令牌。解析是纯函数，不访问网络。
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class TokenKind(Enum):
    """版本令牌类型。"""
    STABLE = "stable"
    NIGHTLY = "nightly"
    LATEST = "latest"
    SEMANTIC = "semantic"
    COMMIT = "commit"
    HEAD = "head"


class ParseError(Exception):
    """版本字符串无法识别。"""

    def __init__(self, text: str):
        self.text = text
        super().__init__(
            f"无法识别的版本: '{text}'。"
            f"可用格式: stable、nightly、latest、head、vX.Y.Z / X.Y.Z、5-40 位小写十六进制提交哈希"
        )


_SEMANTIC_PATTERN = re.compile(r"([0-9]+)\.([0-9]+)\.([0-9]+)")
_COMMIT_PATTERN = re.compile(r"[0-9a-f]{5,40}")
_SHORT_COMMIT_LENGTH = 7

_NAMED_KINDS = {
    "stable": TokenKind.STABLE,
    "nightly": TokenKind.NIGHTLY,
    "latest": TokenKind.LATEST,
}

# 指向默认分支最新提交，安装前由版本管理器解析为具体提交
_HEAD_NAMES = {"head", "git", "HEAD"}


@dataclass(frozen=True, eq=False)
class VersionToken:
    """
    不可变的版本令牌。

    两个令牌相等当且仅当它们的规范目录名相等。
    """

    kind: TokenKind
    semantic: Optional[Tuple[int, int, int]] = None
    commit: Optional[str] = None

    @property
    def canonical_name(self) -> str:
        """规范目录名：stable、nightly、latest、vX.Y.Z 或提交哈希前 7 位。"""
        if self.kind == TokenKind.SEMANTIC:
            major, minor, patch = self.semantic
            return f"v{major}.{minor}.{patch}"
        if self.kind == TokenKind.COMMIT:
            return self.commit[:_SHORT_COMMIT_LENGTH]
        return self.kind.value

    @property
    def is_nightly(self) -> bool:
        return self.kind == TokenKind.NIGHTLY

    @property
    def is_commit(self) -> bool:
        return self.kind == TokenKind.COMMIT

    @property
    def is_head(self) -> bool:
        return self.kind == TokenKind.HEAD

    @classmethod
    def stable(cls) -> "VersionToken":
        return cls(TokenKind.STABLE)

    @classmethod
    def nightly(cls) -> "VersionToken":
        return cls(TokenKind.NIGHTLY)

    @classmethod
    def latest(cls) -> "VersionToken":
        return cls(TokenKind.LATEST)

    @classmethod
    def commit_hash(cls, sha: str) -> "VersionToken":
        return cls(TokenKind.COMMIT, commit=sha)

    @classmethod
    def from_canonical(cls, name: str) -> Optional["VersionToken"]:
        """
        将规范目录名解析回版本令牌。

        参数:
            name: 目录名

        返回:
            版本令牌，名称不是规范目录名时返回 None
        """
        if name in _NAMED_KINDS:
            return cls(_NAMED_KINDS[name])
        if name.startswith("v"):
            match = _SEMANTIC_PATTERN.fullmatch(name[1:])
            if match:
                token = cls(TokenKind.SEMANTIC, semantic=tuple(int(p) for p in match.groups()))
                return token if token.canonical_name == name else None
            return None
        if _COMMIT_PATTERN.fullmatch(name) and len(name) <= _SHORT_COMMIT_LENGTH:
            return cls(TokenKind.COMMIT, commit=name)
        return None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VersionToken):
            return NotImplemented
        return self.canonical_name == other.canonical_name

    def __hash__(self) -> int:
        return hash(self.canonical_name)

    def __str__(self) -> str:
        return self.canonical_name


def is_rollback_name(text: str) -> bool:
    """判断字符串是否是回滚槽位名称（nightly-<id>）。"""
    return text.strip().startswith("nightly-")


def parse(text: str) -> VersionToken:
    """
    解析用户输入的版本字符串。

    参数:
        text: 版本字符串

    返回:
        版本令牌

    抛出:
        ParseError: 无法识别时抛出
    """
    value = text.strip()
    if not value:
        raise ParseError(text)

    if value in _NAMED_KINDS:
        return VersionToken(_NAMED_KINDS[value])
    if value in _HEAD_NAMES:
        return VersionToken(TokenKind.HEAD)

    semantic_text = value
    if re.match(r"v[0-9]", value):
        semantic_text = value[1:]
    match = _SEMANTIC_PATTERN.fullmatch(semantic_text)
    if match:
        return VersionToken(TokenKind.SEMANTIC, semantic=tuple(int(p) for p in match.groups()))

    if _COMMIT_PATTERN.fullmatch(value):
        return VersionToken(TokenKind.COMMIT, commit=value)

    raise ParseError(text)
