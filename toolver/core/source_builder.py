"""
源码构建模块。

用 git 获取指定提交，用 cmake 构建并安装到暂存目录。
"""

import shutil
import subprocess
from pathlib import Path
from typing import Callable, List, Optional

from toolver.core.config_manager import Config
from toolver.core.interfaces import ISourceBuilder
from toolver.core.version_token import VersionToken
from toolver.utils.fs_atomic import remove_tree
from toolver.utils.logger import get_logger

logger = get_logger()

SOURCE_DIR_NAME = ".source"


class BuildError(Exception):
    """源码构建错误异常。"""
    pass


class SourceBuilder(ISourceBuilder):
    """
    源码构建器类。

    源码仓库缓存在 downloads_root/.source 中，多次构建复用同一个克隆。
    """

    REQUIRED_TOOLS = ("git", "cmake")

    def __init__(self, config: Config, runner: Optional[Callable[..., subprocess.CompletedProcess]] = None):
        """
        初始化源码构建器。

        参数:
            config: 配置
            runner: 子进程执行函数，默认为 subprocess.run
        """
        self.config = config
        self._runner = runner or subprocess.run

    @property
    def source_dir(self) -> Path:
        return self.config.downloads_location / SOURCE_DIR_NAME

    @property
    def build_type(self) -> str:
        return "Release" if self.config.enable_release_build else "RelWithDebInfo"

    def repository_url(self) -> str:
        base = self.config.github_mirror or "https://github.com"
        return f"{base}/{self.config.repository}.git"

    def check_tools(self) -> None:
        """
        检查构建所需工具是否可用。

        抛出:
            BuildError: 缺少 git 或 cmake
        """
        missing = [tool for tool in self.REQUIRED_TOOLS if shutil.which(tool) is None]
        if missing:
            raise BuildError(f"从源码构建需要以下工具，但在 PATH 中找不到: {', '.join(missing)}")

    def _run(self, args: List[str], cwd: Optional[Path] = None, capture: bool = False) -> str:
        logger.debug(f"执行: {' '.join(args)}")
        try:
            result = self._runner(
                args,
                cwd=str(cwd) if cwd else None,
                check=True,
                text=True,
                capture_output=capture,
            )
        except FileNotFoundError as e:
            raise BuildError(f"找不到命令 {args[0]}: {e}") from e
        except subprocess.CalledProcessError as e:
            raise BuildError(f"命令执行失败 (退出码 {e.returncode}): {' '.join(args)}") from e
        return (result.stdout or "").strip() if capture else ""

    def _checkout(self, commit: str) -> str:
        source = self.source_dir
        if not (source / ".git").is_dir():
            if source.exists():
                remove_tree(source)
            logger.info(f"正在克隆 {self.repository_url()}")
            self._run(["git", "clone", self.repository_url(), str(source)])
        else:
            self._run(["git", "fetch", "origin"], cwd=source)

        try:
            self._run(["git", "checkout", "--force", commit], cwd=source)
        except BuildError as e:
            raise BuildError(f"无法检出提交 {commit}，请提供更完整的提交哈希") from e
        return self._run(["git", "rev-parse", "HEAD"], cwd=source, capture=True)

    def build(self, token: VersionToken, staging: Path) -> str:
        """
        构建指定提交并安装到暂存目录。

        参数:
            token: 提交哈希版本令牌
            staging: 暂存目录（安装前缀）

        返回:
            完整提交哈希

        抛出:
            BuildError: 工具缺失、检出失败或构建失败
        """
        if not token.is_commit:
            raise BuildError(f"只有提交哈希版本可以从源码构建，{token} 不是提交哈希")
        self.check_tools()

        full_hash = self._checkout(token.commit)
        logger.info(f"正在构建 {full_hash[:7]} ({self.build_type})")

        source = self.source_dir
        for leftover in (source / "build", source / ".deps"):
            if leftover.exists():
                remove_tree(leftover)

        build_arg = f"CMAKE_BUILD_TYPE={self.build_type}"
        self._run(["cmake", "-S", "cmake.deps", "-B", ".deps", "-D", build_arg], cwd=source)
        self._run(["cmake", "--build", ".deps", "--config", self.build_type], cwd=source)
        self._run(["cmake", "-B", "build", "-D", build_arg], cwd=source)
        self._run(["cmake", "--build", "build", "--config", self.build_type], cwd=source)
        self._run(["cmake", "--install", "build", "--prefix", str(staging)], cwd=source)

        logger.info(f"已构建 {full_hash[:7]} 到 {staging}")
        return full_hash
