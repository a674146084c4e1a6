"""
代理分发模块。

同一个可执行文件以任意目标程序名被调用时，在调用时刻通过激活指针
找到当前激活安装中同名的真实程序并执行。调用名如何拼写、经由哪个链接调用都不影响结果。
"""

import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

from toolver.core.registry import InstallationRegistry
from toolver.core.version_token import VersionToken
from toolver.utils.logger import get_logger

logger = get_logger()

MANAGEMENT_NAME = "toolver"


class ActiveVersionError(Exception):
    """激活版本错误异常。"""
    pass


class NoneActiveError(ActiveVersionError):
    """没有激活的版本。"""

    def __init__(self):
        super().__init__("当前没有激活的版本，请先运行 'toolver use <版本>'")


class BinaryMissingError(ActiveVersionError):
    """激活的安装中没有请求的程序。"""

    def __init__(self, name: str, search_dir: Path):
        self.name = name
        self.search_dir = search_dir
        super().__init__(f"在 {search_dir} 中找不到可执行文件 '{name}'")


class InvocationKind(Enum):
    MANAGEMENT = "management"
    PROXY = "proxy"


@dataclass(frozen=True)
class Invocation:
    kind: InvocationKind
    name: str


def _is_windows() -> bool:
    return sys.platform == "win32"


def invocation_name(argv0: str) -> str:
    """取调用路径的基本名，Windows 上去掉 .exe 后缀。"""
    name = os.path.basename(argv0)
    if _is_windows() and name.lower().endswith(".exe"):
        name = name[:-4]
    return name


def resolve_invocation(argv0: str, management_name: str = MANAGEMENT_NAME) -> Invocation:
    """
    根据调用名判断是管理命令还是代理请求。

    以 .py 结尾的调用路径（python -m、脚本方式运行）总是管理命令。

    参数:
        argv0: 进程的 argv[0]
        management_name: 管理程序名

    返回:
        Invocation 实例
    """
    name = invocation_name(argv0)
    if name.lower().endswith(".py") or not name:
        return Invocation(InvocationKind.MANAGEMENT, management_name)
    if _is_windows():
        is_management = name.lower() == management_name.lower()
    else:
        is_management = name == management_name
    kind = InvocationKind.MANAGEMENT if is_management else InvocationKind.PROXY
    return Invocation(kind, name)


def _executable_suffixes() -> List[str]:
    if not _is_windows():
        return [""]
    pathext = os.environ.get("PATHEXT", ".COM;.EXE;.BAT;.CMD")
    return [""] + [ext.lower() for ext in pathext.split(";") if ext]


def find_binary(bin_dir: Path, name: str) -> Optional[Path]:
    """
    在目录中查找与 name 匹配的可执行文件。

    参数:
        bin_dir: 程序目录
        name: 目标程序名

    返回:
        可执行文件路径，找不到返回 None
    """
    if not bin_dir.is_dir():
        return None
    candidates = {}
    for entry in bin_dir.iterdir():
        if not entry.is_file():
            continue
        if not _is_windows() and not os.access(entry, os.X_OK):
            continue
        key = entry.name.lower() if _is_windows() else entry.name
        candidates[key] = entry

    wanted = name.lower() if _is_windows() else name
    for suffix in _executable_suffixes():
        if f"{wanted}{suffix}" in candidates:
            return candidates[f"{wanted}{suffix}"]
    return None


class ProxyDispatcher:
    """
    代理分发器类。

    只读取激活指针，不获取文件锁。
    """

    def __init__(self, registry: InstallationRegistry, replace_process: Optional[bool] = None):
        """
        初始化代理分发器。

        参数:
            registry: 安装注册表
            replace_process: 是否用 exec 替换当前进程，默认 POSIX 上为 True
        """
        self.registry = registry
        self.replace_process = (os.name == "posix") if replace_process is None else replace_process

    @property
    def bin_subdir(self) -> str:
        return self.registry.config.bin_subdir

    def _bin_dir(self, install_path: Path) -> Path:
        return install_path / self.bin_subdir if self.bin_subdir else install_path

    def locate(self, name: str) -> Path:
        """
        在当前激活的安装中查找目标程序。

        参数:
            name: 目标程序名

        返回:
            可执行文件路径

        抛出:
            NoneActiveError: 没有激活的版本
            BinaryMissingError: 激活的安装中没有该程序
        """
        active = self.registry.active()
        if active is None:
            raise NoneActiveError()
        bin_dir = self._bin_dir(active.install_path)
        binary = find_binary(bin_dir, name)
        if binary is None:
            raise BinaryMissingError(name, bin_dir)
        return binary

    def locate_in(self, token: VersionToken, name: str) -> Path:
        installed = self.registry.get(token)
        bin_dir = self._bin_dir(installed.install_path)
        binary = find_binary(bin_dir, name)
        if binary is None:
            raise BinaryMissingError(name, bin_dir)
        return binary

    def available_binaries(self, install_path: Path) -> List[str]:
        """列出安装目录中的可执行程序名（Windows 上去掉扩展名）。"""
        bin_dir = self._bin_dir(install_path)
        if not bin_dir.is_dir():
            return []
        names = []
        for entry in sorted(bin_dir.iterdir()):
            if not entry.is_file():
                continue
            if _is_windows():
                if entry.suffix.lower() in _executable_suffixes()[1:]:
                    names.append(entry.stem)
            elif os.access(entry, os.X_OK):
                names.append(entry.name)
        return names

    def dispatch(self, name: str, args: Sequence[str]) -> int:
        """
        执行当前激活版本中的目标程序。

        参数:
            name: 目标程序名
            args: 传给目标程序的参数

        返回:
            目标程序的退出码（以 exec 替换进程时不返回）
        """
        return self._execute(self.locate(name), args)

    def run_version(self, token: VersionToken, name: str, args: Sequence[str]) -> int:
        """不激活而直接运行指定已安装版本中的程序。"""
        return self._execute(self.locate_in(token, name), args)

    def _execute(self, binary: Path, args: Sequence[str]) -> int:
        argv = [str(binary), *args]
        logger.debug(f"分发到 {binary}")
        if self.replace_process:
            os.execv(str(binary), argv)
        return run_child(argv)


def run_child(argv: List[str]) -> int:
    """
    以子进程方式运行程序并返回其退出码。

    父进程忽略 SIGINT（终端会同时发给子进程），并把 SIGTERM 转发给子进程。
    """
    process = subprocess.Popen(argv)

    def _forward(signum, _frame):
        try:
            process.send_signal(signum)
        except OSError:
            pass

    forwarded = [signal.SIGTERM]
    if hasattr(signal, "SIGBREAK"):
        forwarded.append(signal.SIGBREAK)
    previous = {sig: signal.signal(sig, _forward) for sig in forwarded}
    previous[signal.SIGINT] = signal.signal(signal.SIGINT, signal.SIG_IGN)
    try:
        returncode = process.wait()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    if returncode < 0:
        return 128 - returncode
    return returncode
