import hashlib
import io
import os
import tarfile
import zipfile
from dataclasses import replace
from pathlib import Path
from typing import Dict

import pytest
import requests

from fakes import FakeResponse, FakeSession
from toolver.core import download_manager as download_manager_module
from toolver.core.download_manager import (
    ChecksumError,
    DownloadError,
    DownloadManager,
    DownloadManagerError,
    ExtractionError,
)
from toolver.core.remote_fetcher import ReleaseAsset, ReleaseInfo
from toolver.utils.retry import RetryHandler

ASSET_URL = "https://github.com/neovim/neovim/releases/download/v0.10.0/nvim-linux64.tar.gz"
CHECKSUM_URL = ASSET_URL + ".sha256sum"


def _tar_bytes(files: Dict[str, bytes], mode: int = 0o755) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tf:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tf.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def _zip_bytes(files: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buffer.getvalue()


@pytest.fixture(autouse=True)
def linux_x86_64(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(download_manager_module, "platform_key", lambda: "linux")
    monkeypatch.setattr(download_manager_module, "arch_name", lambda: "x86_64")


def _manager(config, session: FakeSession) -> DownloadManager:
    return DownloadManager(config, session=session, retry_handler=RetryHandler(max_retries=2, sleep=lambda delay: None))


def _release(*assets: ReleaseAsset) -> ReleaseInfo:
    return ReleaseInfo(tag_name="v0.10.0", published_at="2024-05-16T00:00:00Z", commit="1" * 40, assets=list(assets))


class TestAssetSelection:
    def test_default_candidates(self, config) -> None:
        assert DownloadManager(config, session=FakeSession()).asset_candidates() == [
            "nvim-linux-x86_64.tar.gz",
            "nvim-linux64.tar.gz",
        ]

    def test_configured_asset_name(self, config) -> None:
        custom = replace(config, asset_names={"linux": "tool-{platform}-{arch}.tar.gz"})
        assert DownloadManager(custom, session=FakeSession()).asset_candidates() == ["tool-linux-x86_64.tar.gz"]

    def test_falls_back_to_legacy_name(self, config) -> None:
        release = _release(ReleaseAsset("nvim-win64.zip", "u1"), ReleaseAsset("nvim-linux64.tar.gz", "u2"))
        assert DownloadManager(config, session=FakeSession()).select_asset(release).url == "u2"

    def test_no_matching_asset(self, config) -> None:
        release = _release(ReleaseAsset("nvim-win64.zip", "u1"))
        with pytest.raises(DownloadManagerError) as excinfo:
            DownloadManager(config, session=FakeSession()).select_asset(release)
        assert "nvim-win64.zip" in str(excinfo.value)

    def test_mirror_rewrite(self, config) -> None:
        mirrored = DownloadManager(replace(config, github_mirror="https://mirror.example.com"), session=FakeSession())
        assert mirrored.download_url(ASSET_URL) == (
            "https://mirror.example.com/neovim/neovim/releases/download/v0.10.0/nvim-linux64.tar.gz"
        )
        assert mirrored.download_url("https://objects.example.com/x") == "https://objects.example.com/x"
        assert DownloadManager(config, session=FakeSession()).download_url(ASSET_URL) == ASSET_URL


class TestExtract:
    def test_tar_single_top_level_is_stripped(self, config, tmp_path: Path) -> None:
        archive = tmp_path / "nvim-linux64.tar.gz"
        archive.write_bytes(_tar_bytes({"nvim-linux64/bin/nvim": b"#!/bin/sh\n", "nvim-linux64/share/doc": b"doc"}))
        staging = tmp_path / "staging"
        staging.mkdir()
        DownloadManager(config, session=FakeSession()).extract(archive, staging)
        assert sorted(p.name for p in staging.iterdir()) == ["bin", "share"]
        assert (staging / "share" / "doc").read_bytes() == b"doc"
        if os.name == "posix":
            assert os.access(staging / "bin" / "nvim", os.X_OK)

    def test_zip_multiple_top_level_entries_kept(self, config, tmp_path: Path) -> None:
        archive = tmp_path / "nvim-win64.zip"
        archive.write_bytes(_zip_bytes({"bin/nvim.exe": b"MZ", "README": b"hi"}))
        staging = tmp_path / "staging"
        staging.mkdir()
        DownloadManager(config, session=FakeSession()).extract(archive, staging)
        assert sorted(p.name for p in staging.iterdir()) == ["README", "bin"]
        assert (staging / "bin" / "nvim.exe").read_bytes() == b"MZ"

    def test_zip_path_traversal_rejected(self, config, tmp_path: Path) -> None:
        archive = tmp_path / "evil.zip"
        archive.write_bytes(_zip_bytes({"../evil": b"x"}))
        staging = tmp_path / "staging"
        staging.mkdir()
        with pytest.raises(ExtractionError):
            DownloadManager(config, session=FakeSession()).extract(archive, staging)
        assert not (tmp_path / "evil").exists()

    def test_tar_escaping_symlink_rejected(self, config, tmp_path: Path) -> None:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w:gz") as tf:
            info = tarfile.TarInfo("pkg/bin/nvim")
            info.type = tarfile.SYMTYPE
            info.linkname = "../../../../etc/passwd"
            tf.addfile(info)
        archive = tmp_path / "evil.tar.gz"
        archive.write_bytes(buffer.getvalue())
        staging = tmp_path / "staging"
        staging.mkdir()
        with pytest.raises(ExtractionError):
            DownloadManager(config, session=FakeSession()).extract(archive, staging)

    def test_corrupt_archive(self, config, tmp_path: Path) -> None:
        archive = tmp_path / "broken.zip"
        archive.write_bytes(b"not a zip")
        staging = tmp_path / "staging"
        staging.mkdir()
        with pytest.raises(ExtractionError):
            DownloadManager(config, session=FakeSession()).extract(archive, staging)

    def test_unsupported_format(self, config, tmp_path: Path) -> None:
        archive = tmp_path / "nvim.appimage"
        archive.write_bytes(b"ELF")
        staging = tmp_path / "staging"
        staging.mkdir()
        with pytest.raises(ExtractionError):
            DownloadManager(config, session=FakeSession()).extract(archive, staging)


class TestDownloadAndExtract:
    @pytest.fixture
    def tarball(self) -> bytes:
        return _tar_bytes({"nvim-linux64/bin/nvim": b"#!/bin/sh\nexit 0\n"})

    def _asset(self, tarball: bytes) -> ReleaseAsset:
        return ReleaseAsset("nvim-linux64.tar.gz", ASSET_URL, len(tarball))

    def test_verified_install(self, config, tmp_path: Path, tarball: bytes) -> None:
        digest = hashlib.sha256(tarball).hexdigest()
        session = FakeSession({
            ASSET_URL: [FakeResponse(content=tarball)],
            CHECKSUM_URL: [FakeResponse(content=f"{digest}  nvim-linux64.tar.gz\n".encode())],
        })
        release = _release(self._asset(tarball), ReleaseAsset("nvim-linux64.tar.gz.sha256sum", CHECKSUM_URL))
        staging = tmp_path / "staging"
        staging.mkdir()

        _manager(config, session).download_and_extract(release, staging)

        assert (staging / "bin" / "nvim").is_file()
        assert not (staging / ".extract").exists()
        assert list(config.downloads_location.iterdir()) == []

    def test_checksum_mismatch(self, config, tmp_path: Path, tarball: bytes) -> None:
        session = FakeSession({
            ASSET_URL: [FakeResponse(content=tarball)],
            CHECKSUM_URL: [FakeResponse(content=b"0" * 64 + b"  nvim-linux64.tar.gz\n")],
        })
        release = _release(self._asset(tarball), ReleaseAsset("nvim-linux64.tar.gz.sha256sum", CHECKSUM_URL))
        staging = tmp_path / "staging"
        staging.mkdir()
        with pytest.raises(ChecksumError):
            _manager(config, session).download_and_extract(release, staging)
        assert list(staging.iterdir()) == []
        assert list(config.downloads_location.iterdir()) == []

    def test_transient_errors_are_retried(self, config, tmp_path: Path, tarball: bytes) -> None:
        session = FakeSession({
            ASSET_URL: [
                requests.exceptions.ConnectionError("reset"),
                FakeResponse(status_code=503),
                FakeResponse(content=tarball),
            ],
        })
        staging = tmp_path / "staging"
        staging.mkdir()
        _manager(config, session).download_and_extract(_release(self._asset(tarball)), staging)
        assert len(session.calls) == 3
        assert (staging / "bin" / "nvim").is_file()

    def test_retries_exhausted(self, config, tmp_path: Path, tarball: bytes) -> None:
        session = FakeSession({ASSET_URL: [requests.exceptions.ConnectionError("down")]})
        staging = tmp_path / "staging"
        staging.mkdir()
        with pytest.raises(DownloadError):
            _manager(config, session).download_and_extract(_release(self._asset(tarball)), staging)
        assert len(session.calls) == 3
        assert list(config.downloads_location.iterdir()) == []

    def test_client_error_not_retried(self, config, tmp_path: Path, tarball: bytes) -> None:
        session = FakeSession({ASSET_URL: [FakeResponse(status_code=404)]})
        staging = tmp_path / "staging"
        staging.mkdir()
        with pytest.raises(DownloadError):
            _manager(config, session).download_and_extract(_release(self._asset(tarball)), staging)
        assert len(session.calls) == 1

    def test_cached_archive_reused(self, config, tmp_path: Path, tarball: bytes) -> None:
        release = _release(self._asset(tarball))
        config.downloads_location.mkdir(parents=True)
        cached = config.downloads_location / f"v0.10.0-{release.build_id}-nvim-linux64.tar.gz"
        cached.write_bytes(tarball)
        session = FakeSession()
        staging = tmp_path / "staging"
        staging.mkdir()
        _manager(config, session).download_and_extract(release, staging)
        assert session.calls == []
        assert (staging / "bin" / "nvim").is_file()

    def test_mirror_used_for_download(self, config, tmp_path: Path, tarball: bytes) -> None:
        mirrored_url = "https://mirror.example.com/neovim/neovim/releases/download/v0.10.0/nvim-linux64.tar.gz"
        session = FakeSession({mirrored_url: [FakeResponse(content=tarball)]})
        staging = tmp_path / "staging"
        staging.mkdir()
        mirrored = replace(config, github_mirror="https://mirror.example.com")
        _manager(mirrored, session).download_and_extract(_release(self._asset(tarball)), staging)
        assert [url for url, _ in session.calls] == [mirrored_url]

    def test_progress_reported(self, config, tmp_path: Path, tarball: bytes) -> None:
        progress = []
        session = FakeSession({ASSET_URL: [FakeResponse(content=tarball)]})
        manager = DownloadManager(config, session=session, progress_callback=lambda done, total: progress.append((done, total)))
        staging = tmp_path / "staging"
        staging.mkdir()
        manager.download_and_extract(_release(self._asset(tarball)), staging)
        assert progress[-1] == (len(tarball), len(tarball))
