import ctypes
import os
import sys
import uuid
from pathlib import Path


def is_admin() -> bool:
    """
    检测当前进程是否具有管理员权限。

    非 Windows 平台上检测是否为 root 用户。

    Returns:
        bool: 如果具有管理员权限返回 True，否则返回 False
    """
    if sys.platform != "win32":
        return hasattr(os, "geteuid") and os.geteuid() == 0
    try:
        return bool(ctypes.windll.shell32.IsUserAnAdmin())
    except (AttributeError, OSError):
        return False


def can_create_symlinks(directory: Path) -> bool:
    """
    探测当前用户能否在指定目录中创建符号链接。

    Windows 上创建符号链接需要管理员权限或开启开发者模式，
    因此直接尝试创建一个临时链接来判断。

    Args:
        directory: 要探测的目录（必须已存在）

    Returns:
        bool: 能创建符号链接返回 True，否则返回 False
    """
    if sys.platform != "win32":
        return True
    if is_admin():
        return True

    probe = directory / f".symlink-probe-{uuid.uuid4().hex}"
    try:
        probe.symlink_to(directory, target_is_directory=True)
    except (OSError, NotImplementedError):
        return False
    try:
        probe.unlink()
    except OSError:
        pass
    return True
