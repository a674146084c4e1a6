"""
进程监控模块。

提供进程存活检测和正在运行的工具链实例检测功能。
"""

import os
from pathlib import Path
from typing import List, Optional

import psutil

from toolver.utils.logger import get_logger

logger = get_logger()


def process_alive(pid: int) -> bool:
    """
    检测指定 PID 的进程是否仍在运行。

    僵尸进程视为已退出。

    参数:
        pid: 进程 ID

    返回:
        进程存活返回 True，否则返回 False
    """
    if pid <= 0:
        return False
    if pid == os.getpid():
        return True
    if not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def process_create_time(pid: int) -> Optional[float]:
    """
    获取进程的启动时间（Unix 时间戳）。

    参数:
        pid: 进程 ID

    返回:
        启动时间，进程不存在或无权访问时返回 None
    """
    try:
        return psutil.Process(pid).create_time()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def find_processes_under(root: Path) -> List[psutil.Process]:
    """
    查找可执行文件位于指定目录下的所有进程。

    参数:
        root: 目录路径（通常为下载目录）

    返回:
        匹配的进程列表
    """
    try:
        resolved_root = root.resolve()
    except OSError:
        return []

    matches = []
    for proc in psutil.process_iter(["pid", "exe"]):
        exe = proc.info.get("exe")
        if not exe:
            continue
        try:
            Path(exe).resolve().relative_to(resolved_root)
        except (ValueError, OSError):
            continue
        matches.append(proc)
    logger.debug(f"在 {root} 下找到 {len(matches)} 个运行中的进程")
    return matches
