"""
原子文件操作模块。

提供原子写入、原子替换以及基于硬链接的目录复制功能。
"""

import errno
import json
import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, TypeVar

from toolver.utils.logger import get_logger

logger = get_logger()

T = TypeVar("T")

_RETRYABLE_ERRNOS = {errno.EACCES, errno.EPERM, errno.EBUSY}


def _is_retryable_replace_error(exc: OSError) -> bool:
    return getattr(exc, "errno", None) in _RETRYABLE_ERRNOS


def bounded_retry(fn: Callable[[], T], attempts: int = 5, backoff_ms: int = 50) -> T:
    """
    有限次重试文件系统操作。

    Windows 上杀毒软件或索引服务会短暂占用文件，导致 os.replace 失败。

    参数:
        fn: 要执行的操作
        attempts: 最大尝试次数
        backoff_ms: 每次重试前等待的毫秒数

    返回:
        操作的返回值
    """
    for attempt in range(attempts):
        try:
            return fn()
        except OSError as exc:
            if attempt == attempts - 1 or not _is_retryable_replace_error(exc):
                raise
            time.sleep(backoff_ms / 1000.0)
    raise RuntimeError("bounded_retry 未执行任何尝试")


def fsync_dir(path: Path) -> None:
    """尽力刷新目录元数据（Windows 上无效果）。"""
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def safe_replace(tmp: Path, target: Path) -> None:
    """
    原子替换：将 tmp 重命名覆盖 target。

    参数:
        tmp: 临时路径
        target: 目标路径
    """
    def _replace() -> None:
        os.replace(str(tmp), str(target))
        fsync_dir(target.parent)

    bounded_retry(_replace)


def atomic_write_text(path: Path, text: str) -> None:
    """
    原子写入文本文件，防止写入中断导致文件损坏。

    参数:
        path: 目标文件路径
        text: 文件内容
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            temp_path = Path(tmp.name)
            tmp.write(text)
            tmp.flush()
            os.fsync(tmp.fileno())
        safe_replace(temp_path, path)
    finally:
        if temp_path is not None and temp_path.exists():
            temp_path.unlink(missing_ok=True)


def atomic_write_json(path: Path, data: Any, indent: int = 2) -> None:
    """
    原子保存 JSON 数据到文件。

    参数:
        path: 目标文件路径
        data: 要保存的数据
        indent: JSON 缩进
    """
    atomic_write_text(path, json.dumps(data, indent=indent, ensure_ascii=False) + "\n")


def read_json(path: Path) -> Any:
    """
    读取 JSON 文件，文件不存在或内容损坏时返回 None。

    参数:
        path: 文件路径

    返回:
        解析后的数据或 None
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"读取 {path} 失败: {e}")
        return None


def _link_or_copy(src: str, dst: str) -> None:
    try:
        os.link(src, dst)
    except OSError:
        shutil.copy2(src, dst)


def link_tree(src: Path, dst: Path) -> None:
    """
    复制目录树，同一卷上的文件使用硬链接以避免重复占用空间。

    安装目录在替换时会被整体重命名而不是原地修改，
    因此共享 inode 不会导致两个副本相互影响。

    参数:
        src: 源目录
        dst: 目标目录（不能已存在）
    """
    shutil.copytree(src, dst, symlinks=True, copy_function=_link_or_copy)


def remove_tree(path: Path) -> None:
    """
    递归删除目录，遇到只读文件时先去掉只读属性再重试。

    参数:
        path: 要删除的目录

    抛出:
        OSError: 删除失败时抛出（例如文件被其他进程占用）
    """
    def _retry_writable(func, failed_path, _exc):
        os.chmod(failed_path, 0o700)
        func(failed_path)

    if path.is_symlink() or path.is_file():
        path.unlink()
        return
    shutil.rmtree(path, onexc=_retry_writable)
