"""
下载管理模块。

提供发布制品的选择、下载、校验和解压功能。解压结果放入注册表分配的暂存目录。
"""

import hashlib
import os
import platform
import shutil
import stat
import sys
import tarfile
import zipfile
from pathlib import Path
from typing import Callable, Dict, List, Optional

import requests

from toolver.core.config_manager import Config
from toolver.core.interfaces import IArtifactDownloader
from toolver.core.remote_fetcher import USER_AGENT, ReleaseAsset, ReleaseInfo
from toolver.utils.logger import get_logger
from toolver.utils.retry import RetryHandler

logger = get_logger()

GITHUB_BASE = "https://github.com"
CHUNK_SIZE = 64 * 1024
EXTRACT_DIR_NAME = ".extract"

DEFAULT_ASSET_NAMES: Dict[str, List[str]] = {
    "windows": ["nvim-win64.zip"],
    "macos": ["nvim-macos-{arch}.tar.gz", "nvim-macos.tar.gz"],
    "linux": ["nvim-linux-{arch}.tar.gz", "nvim-linux64.tar.gz"],
}


class DownloadManagerError(Exception):
    """下载管理错误异常。"""
    pass


class DownloadError(DownloadManagerError):
    """下载错误异常。"""
    pass


class ChecksumError(DownloadManagerError):
    """校验和不匹配。"""
    pass


class ExtractionError(DownloadManagerError):
    """解压错误异常。"""
    pass


def platform_key() -> str:
    if sys.platform == "win32":
        return "windows"
    if sys.platform == "darwin":
        return "macos"
    return "linux"


def arch_name() -> str:
    machine = platform.machine().lower()
    if machine in ("arm64", "aarch64"):
        return "arm64"
    return "x86_64"


def _is_within(base: Path, target: Path) -> bool:
    try:
        target.resolve().relative_to(base.resolve())
    except ValueError:
        return False
    return True


class DownloadManager(IArtifactDownloader):
    """
    下载管理器类。

    负责选择当前平台的发布制品、下载（带重试）、校验并解压到暂存目录。
    """

    def __init__(
        self,
        config: Config,
        session: Optional[requests.Session] = None,
        retry_handler: Optional[RetryHandler] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ):
        """
        初始化下载管理器。

        参数:
            config: 配置
            session: requests 会话
            retry_handler: 重试处理器，默认按 download_retry_count 创建
            progress_callback: 下载进度回调函数 (已下载字节, 总字节)
        """
        self.config = config
        self.session = session or requests.Session()
        self.retry_handler = retry_handler or RetryHandler(max_retries=config.download_retry_count)
        self.progress_callback = progress_callback

    def asset_candidates(self) -> List[str]:
        """获取当前平台可接受的制品文件名（按优先级）。"""
        key = platform_key()
        override = self.config.asset_names.get(key)
        patterns = [override] if override else DEFAULT_ASSET_NAMES[key]
        return [pattern.format(arch=arch_name(), platform=key) for pattern in patterns]

    def select_asset(self, release: ReleaseInfo) -> ReleaseAsset:
        """
        选择当前平台的发布制品。

        抛出:
            DownloadManagerError: 发布中没有适用于当前平台的制品
        """
        candidates = self.asset_candidates()
        for name in candidates:
            asset = release.find_asset(name)
            if asset is not None:
                return asset
        available = ", ".join(asset.name for asset in release.assets) or "无"
        raise DownloadManagerError(
            f"发布 {release.tag_name} 中没有适用于当前平台的制品 "
            f"(需要 {' / '.join(candidates)}，可用: {available})"
        )

    def download_url(self, url: str) -> str:
        """配置了 github_mirror 时将 github.com 地址替换为镜像地址。"""
        mirror = self.config.github_mirror
        if mirror and url.startswith(GITHUB_BASE):
            return mirror + url[len(GITHUB_BASE):]
        return url

    def _fetch(self, url: str, destination: Path) -> None:
        part = destination.with_name(destination.name + ".part")

        def _do_download() -> None:
            response = self.session.get(
                url,
                headers={"User-Agent": USER_AGENT},
                stream=True,
                timeout=self.config.request_timeout,
            )
            response.raise_for_status()
            total = int(response.headers.get("content-length", 0))
            downloaded = 0
            with open(part, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
                        downloaded += len(chunk)
                        if self.progress_callback and total > 0:
                            self.progress_callback(downloaded, total)

        try:
            self.retry_handler.execute(_do_download)
        except requests.exceptions.RequestException as e:
            part.unlink(missing_ok=True)
            logger.error(f"下载 {url} 失败: {e}")
            raise DownloadError(f"下载 {url} 失败: {e}") from e
        os.replace(part, destination)

    def download(self, release: ReleaseInfo, asset: ReleaseAsset) -> Path:
        """
        下载制品到下载目录。

        已存在大小相同的缓存文件时跳过下载。

        返回:
            压缩包路径
        """
        root = self.config.downloads_location
        root.mkdir(parents=True, exist_ok=True)
        archive = root / f"{release.tag_name}-{release.build_id}-{asset.name}"

        if archive.is_file() and asset.size and archive.stat().st_size == asset.size:
            logger.info(f"使用已下载的 {archive.name}")
            return archive

        url = self.download_url(asset.url)
        logger.info(f"正在从 {url} 下载 {asset.name}")
        self._fetch(url, archive)
        return archive

    def verify_checksum(self, release: ReleaseInfo, asset: ReleaseAsset, archive: Path) -> bool:
        """
        使用发布中的 .sha256sum 文件校验压缩包。

        返回:
            发布中有校验文件且校验通过返回 True，没有校验文件返回 False

        抛出:
            ChecksumError: 校验和不匹配或校验文件中没有该制品
        """
        checksum_asset = release.find_asset(f"{asset.name}.sha256sum") or release.find_asset("shasum.txt")
        if checksum_asset is None:
            logger.debug(f"发布 {release.tag_name} 没有校验文件，跳过校验")
            return False

        checksum_file = archive.with_name(archive.name + ".sha256sum")
        self._fetch(self.download_url(checksum_asset.url), checksum_file)
        try:
            lines = checksum_file.read_text(encoding="utf-8").splitlines()
        finally:
            checksum_file.unlink(missing_ok=True)

        expected = None
        for line in lines:
            parts = line.split()
            if len(parts) >= 2 and parts[-1].lstrip("*").endswith(asset.name):
                expected = parts[0].lower()
                break
            if len(parts) == 1 and checksum_asset.name.endswith(".sha256sum"):
                expected = parts[0].lower()
                break
        if expected is None:
            raise ChecksumError(f"校验文件 {checksum_asset.name} 中没有 {asset.name} 的校验和")

        digest = hashlib.sha256()
        with open(archive, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                digest.update(chunk)
        if digest.hexdigest() != expected:
            archive.unlink(missing_ok=True)
            raise ChecksumError(f"{asset.name} 校验和不匹配，已删除下载文件")
        logger.info(f"{asset.name} 校验通过")
        return True

    def _extract_zip(self, archive: Path, target: Path) -> None:
        with zipfile.ZipFile(archive, "r") as zf:
            for member in zf.infolist():
                name = member.filename
                if name.startswith(("/", "\\")) or ".." in Path(name).parts:
                    raise ExtractionError(f"压缩包包含非法路径: {name}")
                if not _is_within(target, target / name):
                    raise ExtractionError(f"压缩包包含非法路径: {name}")
            zf.extractall(target)
            if os.name == "posix":
                for member in zf.infolist():
                    mode = member.external_attr >> 16
                    if mode & 0o111:
                        path = target / member.filename
                        path.chmod(path.stat().st_mode | (mode & 0o777))

    def _extract_tar(self, archive: Path, target: Path) -> None:
        with tarfile.open(archive, "r:*") as tf:
            for member in tf.getmembers():
                name = member.name
                if name.startswith(("/", "\\")) or ".." in Path(name).parts:
                    raise ExtractionError(f"压缩包包含非法路径: {name}")
                if member.islnk() or member.issym():
                    link_target = (target / name).parent / member.linkname
                    if Path(member.linkname).is_absolute() or not _is_within(target, link_target):
                        raise ExtractionError(f"压缩包包含非法链接: {name} -> {member.linkname}")
            tf.extractall(target, filter="tar")

    def extract(self, archive: Path, staging: Path) -> None:
        """
        安全解压压缩包到暂存目录。

        压缩包只有一个顶层目录时去掉这一层。

        参数:
            archive: 压缩包路径
            staging: 暂存目录

        抛出:
            ExtractionError: 格式不支持、压缩包损坏或包含非法路径
        """
        work = staging / EXTRACT_DIR_NAME
        work.mkdir(parents=True, exist_ok=True)
        name = archive.name.lower()
        try:
            if name.endswith(".zip"):
                self._extract_zip(archive, work)
            elif name.endswith((".tar.gz", ".tgz", ".tar.xz", ".tar.bz2", ".tar")):
                self._extract_tar(archive, work)
            else:
                raise ExtractionError(f"不支持的压缩格式: {archive.name}")
        except (zipfile.BadZipFile, tarfile.TarError) as e:
            raise ExtractionError(f"解压 {archive.name} 失败: {e}") from e

        entries = list(work.iterdir())
        source = entries[0] if len(entries) == 1 and entries[0].is_dir() else work
        for entry in list(source.iterdir()):
            shutil.move(str(entry), str(staging / entry.name))
        shutil.rmtree(work)
        self._mark_executables(staging)

    def _mark_executables(self, staging: Path) -> None:
        if os.name != "posix":
            return
        bin_dir = staging / self.config.bin_subdir
        if not bin_dir.is_dir():
            return
        for entry in bin_dir.iterdir():
            if entry.is_file() and not entry.is_symlink():
                entry.chmod(entry.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    def download_and_extract(self, release: ReleaseInfo, staging: Path) -> None:
        """
        下载、校验并解压发布制品到暂存目录。

        解压成功后删除压缩包；失败时保留，下次安装可以复用。

        参数:
            release: 发布信息
            staging: 暂存目录
        """
        asset = self.select_asset(release)
        archive = self.download(release, asset)
        self.verify_checksum(release, asset, archive)
        logger.info(f"正在解压 {archive.name} 到 {staging}")
        self.extract(archive, staging)
        archive.unlink(missing_ok=True)
