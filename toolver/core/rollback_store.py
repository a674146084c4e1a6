"""
回滚存储模块。

保存被替换的 nightly 安装，数量受 rollback_limit 限制，按归档时间先进先出淘汰。
槽位目录位于 install_root/rollback/nightly-<id>-<时间戳>。
"""

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from toolver.core.installed_version import InstalledVersion
from toolver.core.version_token import VersionToken
from toolver.utils.fs_atomic import link_tree, remove_tree
from toolver.utils.logger import get_logger

if TYPE_CHECKING:
    from toolver.core.registry import InstallationRegistry

logger = get_logger()

SLOT_PREFIX = "nightly-"
TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S%f"
_SLOT_PATTERN = re.compile(r"nightly-([0-9A-Za-z]+)-([0-9]{8}T[0-9]{12})")


class RollbackError(Exception):
    """回滚错误异常。"""
    pass


class NoRollbackAvailableError(RollbackError):
    """没有可用的回滚槽位。"""

    def __init__(self):
        super().__init__("没有可用的 nightly 回滚版本")


@dataclass(frozen=True)
class RollbackSlot:
    """一个归档的 nightly 安装。"""

    install_path: Path
    archived_at: datetime
    nightly_id: str

    @property
    def token(self) -> VersionToken:
        return VersionToken.nightly()

    @property
    def name(self) -> str:
        return self.install_path.name


def nightly_id(installed: InstalledVersion) -> str:
    """
    生成 nightly 构建的标识。

    优先使用提交哈希前 7 位，其次使用发布时间中的数字。
    """
    if installed.full_commit_hash:
        return installed.full_commit_hash[:7]
    if installed.published_at:
        digits = "".join(ch for ch in installed.published_at if ch.isdigit())
        if digits:
            return digits
    return "unknown"


def parse_slot(path: Path) -> Optional[RollbackSlot]:
    match = _SLOT_PATTERN.fullmatch(path.name)
    if not match:
        return None
    try:
        archived_at = datetime.strptime(match.group(2), TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return RollbackSlot(install_path=path, archived_at=archived_at, nightly_id=match.group(1))


class RollbackStore:
    """
    回滚存储类。

    所有修改操作都持有注册表的锁。
    """

    def __init__(self, registry: "InstallationRegistry"):
        self.registry = registry

    @property
    def root(self) -> Path:
        return self.registry.config.rollback_dir

    @property
    def limit(self) -> int:
        return self.registry.config.rollback_limit

    def list(self) -> List[RollbackSlot]:
        """列出所有回滚槽位，最新的在前。"""
        if not self.root.is_dir():
            return []
        slots = [slot for slot in (parse_slot(p) for p in self.root.iterdir() if p.is_dir()) if slot]
        return sorted(slots, key=lambda s: (s.archived_at, s.name), reverse=True)

    def _new_slot_path(self, installed: InstalledVersion) -> Path:
        now = datetime.now()
        path = self.root / f"{SLOT_PREFIX}{nightly_id(installed)}-{now.strftime(TIMESTAMP_FORMAT)}"
        while path.exists():
            now = now.replace(microsecond=(now.microsecond + 1) % 1_000_000)
            path = self.root / f"{SLOT_PREFIX}{nightly_id(installed)}-{now.strftime(TIMESTAMP_FORMAT)}"
        return path

    def archive(self, previous: InstalledVersion, prune: bool = True) -> Optional[RollbackSlot]:
        """
        将 nightly 安装归档为最新的回滚槽位。

        同一卷上使用硬链接，跨卷时退化为复制。

        参数:
            previous: 被替换的 nightly 安装
            prune: 归档后是否立即淘汰超出限制的旧槽位

        返回:
            新槽位；rollback_limit 为 0 时不保留，返回 None

        抛出:
            RollbackError: previous 不是 nightly 时抛出
        """
        if not previous.token.is_nightly:
            raise RollbackError(f"只有 nightly 版本可以归档，{previous.token} 不能归档")

        with self.registry.lock:
            if self.limit == 0:
                logger.info("rollback_limit 为 0，不保留回滚版本")
                return None
            self.root.mkdir(parents=True, exist_ok=True)
            path = self._new_slot_path(previous)
            link_tree(previous.install_path, path)
            slot = parse_slot(path)
            logger.info(f"已归档 nightly 到回滚槽位 {path.name}")
            if prune:
                self.prune()
            return slot

    def prune(self, limit: Optional[int] = None) -> List[RollbackSlot]:
        """
        删除超出数量限制的最旧槽位。

        参数:
            limit: 保留数量，为 None 时使用配置值

        返回:
            被删除的槽位列表
        """
        limit = self.limit if limit is None else limit
        with self.registry.lock:
            slots = self.list()
            evicted = slots[limit:]
            for slot in evicted:
                remove_tree(slot.install_path)
                logger.info(f"已淘汰回滚槽位 {slot.name}")
            return evicted

    def _select(self, slots: List[RollbackSlot], selector: Optional[str]) -> RollbackSlot:
        if not selector:
            return slots[0]
        for slot in slots:
            if slot.name.startswith(selector) or slot.nightly_id.startswith(selector):
                return slot
        raise RollbackError(f"未找到匹配 '{selector}' 的回滚槽位")

    def rollback(self, selector: Optional[str] = None) -> InstalledVersion:
        """
        回滚到指定的（默认最新的）槽位。

        回滚前的 nightly 成为最新槽位，因此连续回滚两次会回到原来的构建。

        参数:
            selector: 槽位目录名或 nightly 标识的前缀

        返回:
            回滚后的 nightly 安装

        抛出:
            NoRollbackAvailableError: 没有任何槽位
            RollbackError: 没有匹配 selector 的槽位
        """
        nightly = VersionToken.nightly()
        with self.registry.lock:
            slots = self.list()
            if not slots:
                raise NoRollbackAvailableError()
            slot = self._select(slots, selector)

            pointer = self.registry.pointer
            canonical = self.registry.canonical_path(nightly)
            previous_target = pointer.read()
            pointer.write(slot.install_path, nightly.canonical_name)

            if canonical.is_dir():
                current = self.registry.get(nightly)
                try:
                    current.install_path.rename(self._new_slot_path(current))
                except OSError:
                    if previous_target is not None:
                        pointer.write(previous_target, previous_target.name)
                    else:
                        pointer.clear()
                    raise

            link_tree(slot.install_path, canonical)
            pointer.write(canonical, nightly.canonical_name)
            remove_tree(slot.install_path)
            self.prune()

            logger.info(f"已回滚 nightly 到 {slot.name}")
            return self.registry.get(nightly)

    def discard(self) -> None:
        """删除所有回滚槽位。"""
        with self.registry.lock:
            if self.root.exists():
                remove_tree(self.root)
                logger.info("已删除所有回滚槽位")
