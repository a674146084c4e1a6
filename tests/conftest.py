import os
import stat
import tempfile
from pathlib import Path
from typing import Dict, Optional

import pytest

os.environ.setdefault("TOOLVER_LOG_DIR", tempfile.mkdtemp(prefix="toolver-test-logs-"))

from toolver.core.config_manager import Config  # noqa: E402
from toolver.core.pointer import CopyStrategy, SymlinkStrategy  # noqa: E402
from toolver.core.registry import InstallationRegistry  # noqa: E402
from toolver.core.version_token import VersionToken  # noqa: E402


def symlinks_supported(directory: Path) -> bool:
    probe = directory / ".probe-link"
    try:
        probe.symlink_to(directory, target_is_directory=True)
    except (OSError, NotImplementedError):
        return False
    probe.unlink()
    return True


def write_executable(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def make_staging(
    registry: InstallationRegistry,
    token: VersionToken,
    build: str = "build-1",
    binaries: Optional[Dict[str, str]] = None,
) -> Path:
    """Create a staging dir holding bin/<name> scripts and a BUILD marker file."""
    staging = registry.staging_dir(token)
    for name, body in (binaries or {"nvim": f"echo {build}"}).items():
        write_executable(staging / "bin" / name, body)
    (staging / "BUILD").write_text(build, encoding="utf-8")
    return staging


def build_of(path: Path) -> str:
    return (path / "BUILD").read_text(encoding="utf-8")


@pytest.fixture
def config(tmp_path: Path) -> Config:
    downloads = tmp_path / "downloads"
    return Config(
        downloads_location=downloads,
        installation_location=downloads / "toolver-bin",
        rollback_limit=3,
        lock_timeout=0,
    )


@pytest.fixture(params=["symlink", "copy"])
def registry(request: pytest.FixtureRequest, config: Config, tmp_path: Path) -> InstallationRegistry:
    if request.param == "symlink":
        if not symlinks_supported(tmp_path):
            pytest.skip("Symlinks not supported on this platform")
        strategy = SymlinkStrategy(config.installation_location)
    else:
        strategy = CopyStrategy(config.installation_location)
    return InstallationRegistry(config, link_strategy=strategy)


@pytest.fixture
def copy_registry(config: Config) -> InstallationRegistry:
    return InstallationRegistry(config, link_strategy=CopyStrategy(config.installation_location))
