"""
文件锁模块。

提供带过期锁检测的跨进程排他锁。锁文件内容为 JSON：
{"pid": 进程 ID, "host": 主机名, "started_at": ISO 时间, "token": 随机标识}。

锁文件先完整写入临时文件，再通过 os.link 原子地链接到锁路径，
其他进程看到的锁文件总是带有完整内容。
"""

import json
import os
import socket
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Set

from toolver.utils.logger import get_logger
from toolver.utils.process_monitor import process_alive, process_create_time

logger = get_logger()

# 内容无法识别的锁文件在此时间（秒）内仍视为被持有
STALE_GRACE_SECONDS = 5.0
# 进程启动时间晚于锁写入时间超过该值时视为 PID 被复用
PID_REUSE_TOLERANCE = 1.0

# 当前进程内各 FileLock 实例持有的锁标识
_held_tokens: Set[str] = set()


class LockError(Exception):
    """文件锁错误异常。"""
    pass


class LockHeldError(LockError):
    """锁被其他存活进程持有。"""

    def __init__(self, path: Path, pid: Optional[int]):
        self.path = path
        self.pid = pid
        super().__init__(f"锁 {path} 正被进程 {pid} 持有，请等待其完成后重试")


class StaleLockError(LockError):
    """检测到过期锁但无法回收。"""

    def __init__(self, path: Path, reason: str):
        self.path = path
        super().__init__(f"无法回收过期锁 {path}: {reason}")


@dataclass(frozen=True)
class LockInfo:
    pid: Optional[int]
    host: Optional[str]
    started_at: Optional[str]
    token: Optional[str] = None


def read_lock_info(path: Path) -> LockInfo:
    """
    读取锁文件中的持有者信息。

    兼容只包含 PID 的旧格式；文件缺失或损坏时各字段为 None。

    参数:
        path: 锁文件路径

    返回:
        LockInfo 实例
    """
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except OSError:
        return LockInfo(None, None, None)
    if not raw:
        return LockInfo(None, None, None)
    if raw.isdigit():
        return LockInfo(int(raw), None, None)
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return LockInfo(None, None, None)
    if not isinstance(payload, dict):
        return LockInfo(None, None, None)

    pid = payload.get("pid")
    try:
        pid = int(pid) if pid is not None else None
    except (TypeError, ValueError):
        pid = None
    host = payload.get("host")
    started_at = payload.get("started_at")
    token = payload.get("token")
    return LockInfo(
        pid,
        host if isinstance(host, str) else None,
        started_at if isinstance(started_at, str) else None,
        token if isinstance(token, str) else None,
    )


def _parse_timestamp(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value).timestamp()
    except ValueError:
        return None


def lock_is_stale(info: LockInfo, age: float = 0.0) -> bool:
    """
    判断锁是否过期。

    以下情况视为过期：
    - 内容无法识别且锁文件已超过宽限期
    - 持有者 PID 是当前进程，但没有任何本进程的实例持有该锁
    - 持有者进程已退出
    - 同一 PID 的进程启动时间晚于锁的写入时间（PID 被复用）

    其他主机持有的锁无法检测存活状态，视为有效。

    参数:
        info: 锁持有者信息
        age: 锁文件距最后修改的时间（秒）

    返回:
        过期返回 True
    """
    if info.pid is None:
        return age >= STALE_GRACE_SECONDS
    if info.host and info.host != socket.gethostname():
        return False
    if info.pid == os.getpid():
        return info.token is None or info.token not in _held_tokens
    if not process_alive(info.pid):
        return True

    written_at = _parse_timestamp(info.started_at)
    created_at = process_create_time(info.pid)
    if written_at is None or created_at is None:
        return False
    return created_at > written_at + PID_REUSE_TOLERANCE


class FileLock:
    """
    基于 os.link 原子创建的排他文件锁。

    同一实例可重入：嵌套的 with 语句只在最外层释放锁。
    """

    def __init__(self, path: Path, timeout: float = 0.0, poll_interval: float = 0.1):
        """
        初始化文件锁。

        参数:
            path: 锁文件路径
            timeout: 锁被占用时的最长等待时间（秒），0 表示不等待
            poll_interval: 等待期间的轮询间隔（秒）
        """
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._depth = 0
        self._token: Optional[str] = None

    @property
    def held(self) -> bool:
        return self._depth > 0

    def _scratch_path(self, kind: str) -> Path:
        return self.path.with_name(f".{self.path.name}.{kind}-{os.getpid()}-{uuid.uuid4().hex[:8]}")

    def _try_create(self) -> bool:
        token = uuid.uuid4().hex
        payload = {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "started_at": datetime.now(timezone.utc).isoformat(),
            "token": token,
        }
        temp = self._scratch_path("tmp")
        temp.write_text(json.dumps(payload), encoding="utf-8")
        try:
            os.link(temp, self.path)
        except FileExistsError:
            return False
        finally:
            temp.unlink(missing_ok=True)

        self._token = token
        _held_tokens.add(token)
        return True

    def _lock_age(self) -> Optional[float]:
        try:
            return max(0.0, time.time() - self.path.stat().st_mtime)
        except FileNotFoundError:
            return None

    def _reclaim_stale(self, info: LockInfo) -> None:
        """
        回收过期锁。

        先把锁文件改名到唯一名称，再确认改名后的内容仍是判定为过期的那一份；
        若期间已被其他进程重新获取，则把它放回原处。
        """
        logger.warning(f"检测到过期锁 {self.path}（持有者 PID: {info.pid}），正在回收")
        target = self._scratch_path("stale")
        try:
            os.rename(self.path, target)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StaleLockError(self.path, str(e)) from e

        try:
            if read_lock_info(target) != info:
                logger.warning(f"锁 {self.path} 在回收期间已被其他进程重新获取，正在恢复")
                try:
                    os.link(target, self.path)
                except FileExistsError:
                    logger.warning(f"锁 {self.path} 已被再次创建，放弃恢复")
        finally:
            target.unlink(missing_ok=True)

    def acquire(self) -> None:
        """
        获取锁。

        抛出:
            LockHeldError: 锁被存活进程持有且等待超时
            StaleLockError: 过期锁无法回收
        """
        if self._depth > 0:
            self._depth += 1
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout
        reclaimed = False

        while True:
            if self._try_create():
                self._depth = 1
                logger.debug(f"已获取锁 {self.path}")
                return

            info = read_lock_info(self.path)
            age = self._lock_age()
            if age is None:
                continue

            if lock_is_stale(info, age):
                if reclaimed:
                    raise StaleLockError(self.path, "回收后锁仍被重新占用")
                self._reclaim_stale(info)
                reclaimed = True
                continue

            if time.monotonic() >= deadline:
                raise LockHeldError(self.path, info.pid)
            time.sleep(self.poll_interval)

    def release(self) -> None:
        """释放锁，只删除由当前实例创建的锁文件。"""
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth > 0:
            return

        token, self._token = self._token, None
        _held_tokens.discard(token)
        if not self.path.exists():
            return
        info = read_lock_info(self.path)
        if info.token != token:
            logger.warning(f"锁 {self.path} 已不属于当前进程，跳过释放")
            return
        try:
            self.path.unlink()
            logger.debug(f"已释放锁 {self.path}")
        except FileNotFoundError:
            pass

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
