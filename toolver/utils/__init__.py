"""
toolver 工具模块。

提供日志记录、文件锁、原子文件操作、重试、权限和进程检测等工具功能。
"""

from .logger import get_logger
from .permission_manager import is_admin, can_create_symlinks
from .retry import RetryHandler
from .file_lock import FileLock, LockError, LockHeldError, StaleLockError
from .process_monitor import process_alive, find_processes_under

__all__ = [
    "get_logger",
    "is_admin",
    "can_create_symlinks",
    "RetryHandler",
    "FileLock",
    "LockError",
    "LockHeldError",
    "StaleLockError",
    "process_alive",
    "find_processes_under",
]
