import os
from dataclasses import replace
from pathlib import Path
from types import SimpleNamespace
from typing import List

import pytest

from conftest import build_of, write_executable
from fakes import FakeBuilder, FakeDownloader, FakeFetcher
from toolver.core import version_manager as version_manager_module
from toolver.core.registry import ActiveVersionInUseError, InstallationRegistry, NotInstalledError
from toolver.core.remote_fetcher import NetworkError, ReleaseInfo, ReleaseNotFoundError
from toolver.core.version_manager import (
    InstallStatus,
    RunningInstanceError,
    SyncFileError,
    VersionManager,
    VersionManagerError,
)
from toolver.core.version_token import VersionToken, parse

STABLE = VersionToken.stable()
NIGHTLY = VersionToken.nightly()
V010 = parse("v0.10.0")


def _release(tag: str, commit_char: str, published_at: str) -> ReleaseInfo:
    return ReleaseInfo(tag_name=tag, published_at=published_at, commit=commit_char * 40)


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher({
        "stable": _release("v0.10.0", "1", "2024-05-16T00:00:00Z"),
        "v0.10.0": _release("v0.10.0", "1", "2024-05-16T00:00:00Z"),
        "v0.9.5": _release("v0.9.5", "2", "2023-12-30T00:00:00Z"),
        "nightly": _release("nightly", "a", "2024-06-01T00:00:00Z"),
    })


@pytest.fixture
def downloader() -> FakeDownloader:
    return FakeDownloader()


@pytest.fixture
def builder() -> FakeBuilder:
    return FakeBuilder()


def _make_manager(config, registry, fetcher, downloader, builder, tmp_path: Path) -> VersionManager:
    executable = write_executable(tmp_path / "exe" / "toolver", "exit 0")
    return VersionManager(
        config,
        registry=registry,
        fetcher=fetcher,
        downloader=downloader,
        builder=builder,
        executable=executable,
    )


@pytest.fixture
def manager(config, registry: InstallationRegistry, fetcher, downloader, builder, tmp_path: Path) -> VersionManager:
    return _make_manager(config, registry, fetcher, downloader, builder, tmp_path)


def _scratch_dirs(manager: VersionManager) -> List[str]:
    root = manager.registry.downloads_root
    return [p.name for p in root.iterdir() if p.name.startswith(".")] if root.is_dir() else []


class TestInstall:
    def test_install_does_not_activate(self, manager: VersionManager, downloader: FakeDownloader) -> None:
        outcome = manager.install(V010)
        assert outcome.status == InstallStatus.INSTALLED
        assert outcome.installed.tag_name == "v0.10.0"
        assert outcome.installed.full_commit_hash == "1" * 40
        assert manager.active() is None
        assert downloader.downloads == ["v0.10.0"]

    def test_install_is_idempotent(self, manager: VersionManager, downloader: FakeDownloader) -> None:
        manager.install(V010)
        outcome = manager.install(V010)
        assert outcome.status == InstallStatus.ALREADY_INSTALLED
        assert downloader.downloads == ["v0.10.0"]

    def test_force_reinstalls(self, manager: VersionManager, downloader: FakeDownloader) -> None:
        manager.install(V010)
        outcome = manager.install(V010, force=True)
        assert outcome.status == InstallStatus.UPDATED
        assert downloader.downloads == ["v0.10.0", "v0.10.0"]

    def test_nightly_up_to_date(self, manager: VersionManager, downloader: FakeDownloader) -> None:
        manager.install(NIGHTLY)
        outcome = manager.install(NIGHTLY)
        assert outcome.status == InstallStatus.NIGHTLY_UP_TO_DATE
        assert downloader.downloads == ["nightly"]

    def test_new_nightly_replaces_build_and_reports_changelog(
        self, manager: VersionManager, fetcher: FakeFetcher
    ) -> None:
        manager.install(NIGHTLY)
        fetcher.releases["nightly"] = _release("nightly", "b", "2024-06-02T00:00:00Z")
        outcome = manager.install(NIGHTLY)
        assert outcome.status == InstallStatus.UPDATED
        assert build_of(outcome.installed.install_path) == "nightly-bbbbbbb"
        assert fetcher.changelog_calls == [("2024-06-01T00:00:00Z", "2024-06-02T00:00:00Z")]
        assert outcome.changelog[0]["message"] == "fix: something"

    def test_changelog_failure_is_not_fatal(self, manager: VersionManager, fetcher: FakeFetcher) -> None:
        manager.install(NIGHTLY)
        fetcher.releases["nightly"] = _release("nightly", "b", "2024-06-02T00:00:00Z")
        fetcher.changelog_error = NetworkError("offline")
        outcome = manager.install(NIGHTLY)
        assert outcome.status == InstallStatus.UPDATED
        assert outcome.changelog == []

    def test_changelog_disabled(
        self, config, registry, fetcher: FakeFetcher, downloader, builder, tmp_path: Path
    ) -> None:
        quiet = _make_manager(replace(config, enable_nightly_info=False), registry, fetcher, downloader, builder, tmp_path)
        quiet.install(NIGHTLY)
        fetcher.releases["nightly"] = _release("nightly", "b", "2024-06-02T00:00:00Z")
        quiet.install(NIGHTLY)
        assert fetcher.changelog_calls == []

    def test_failed_download_leaves_nothing(self, manager: VersionManager, downloader: FakeDownloader) -> None:
        downloader.fail = True
        with pytest.raises(NetworkError):
            manager.install(V010)
        assert not manager.registry.is_installed(V010)
        assert _scratch_dirs(manager) == []
        assert not manager.registry.lock.held

    def test_failed_update_keeps_previous_install(
        self, manager: VersionManager, downloader: FakeDownloader
    ) -> None:
        manager.use(V010)
        downloader.fail = True
        with pytest.raises(NetworkError):
            manager.install(V010, force=True)
        assert build_of(manager.active().install_path) == "v0.10.0-1111111"

    def test_unknown_remote_version(self, manager: VersionManager) -> None:
        with pytest.raises(ReleaseNotFoundError):
            manager.install(parse("v99.0.0"))
        assert manager.list_installed() == []

    def test_commit_builds_from_source(self, manager: VersionManager, builder: FakeBuilder) -> None:
        token = parse("abcdef0123")
        outcome = manager.install(token)
        assert builder.built == ["abcdef0123"]
        assert outcome.installed.install_path.name == "abcdef0"
        assert outcome.installed.built_from_source is True
        assert outcome.installed.full_commit_hash == "abcdef0123".ljust(40, "0")

    def test_head_builds_latest_commit(
        self, manager: VersionManager, fetcher: FakeFetcher, builder: FakeBuilder
    ) -> None:
        outcome = manager.install(parse("head"))
        assert fetcher.head_calls == 1
        assert builder.built == ["d" * 40]
        assert outcome.installed.token == parse("d" * 40)
        assert outcome.installed.install_path.name == "ddddddd"
        assert not manager.registry.canonical_path(parse("head")).exists()

    def test_use_head_records_commit_in_sync_file(
        self, config, registry, fetcher: FakeFetcher, downloader, builder, tmp_path: Path
    ) -> None:
        sync_file = tmp_path / "nvim-version"
        synced = _make_manager(
            replace(config, version_sync_file_location=sync_file), registry, fetcher, downloader, builder, tmp_path
        )
        synced.use(parse("HEAD"))
        assert synced.active().token == parse("d" * 40)
        assert sync_file.read_text(encoding="utf-8").strip() == "ddddddd"

    def test_running_instances_block_install(
        self, config, registry, fetcher, downloader, builder, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        strict = _make_manager(
            replace(config, ignore_running_instances=False), registry, fetcher, downloader, builder, tmp_path
        )
        monkeypatch.setattr(version_manager_module, "find_processes_under", lambda root: [SimpleNamespace(pid=42)])
        with pytest.raises(RunningInstanceError) as excinfo:
            strict.install(V010)
        assert excinfo.value.pids == [42]
        assert downloader.downloads == []


class TestUse:
    def test_use_installs_activates_and_creates_proxies(self, manager: VersionManager) -> None:
        outcome = manager.use(V010)
        assert outcome.changed is True
        assert outcome.install.status == InstallStatus.INSTALLED
        assert manager.active().token == V010
        assert [p.name for p in manager.registry.proxies()] == ["nvim"]

    def test_use_active_version_is_noop(self, manager: VersionManager, downloader: FakeDownloader) -> None:
        manager.use(V010)
        outcome = manager.use(V010)
        assert outcome.changed is False
        assert downloader.downloads == ["v0.10.0"]

    def test_use_switches_between_installed(self, manager: VersionManager) -> None:
        manager.use(V010)
        manager.use(parse("0.9.5"))
        assert manager.active().token == parse("v0.9.5")
        assert manager.registry.is_installed(V010)

    def test_use_without_install(self, manager: VersionManager) -> None:
        with pytest.raises(NotInstalledError):
            manager.use(V010, install=False)
        assert manager.active() is None

    def test_use_nightly_updates_active_build(self, manager: VersionManager, fetcher: FakeFetcher) -> None:
        manager.use(NIGHTLY)
        fetcher.releases["nightly"] = _release("nightly", "b", "2024-06-02T00:00:00Z")
        outcome = manager.use(NIGHTLY)
        assert outcome.changed is True
        assert build_of(manager.active().install_path) == "nightly-bbbbbbb"
        assert len(manager.list_rollbacks()) == 1

    def test_configured_proxy_names(
        self, config, registry, fetcher, downloader, builder, tmp_path: Path
    ) -> None:
        named = _make_manager(
            replace(config, proxy_names=["nvim", "vi", "toolver"]), registry, fetcher, downloader, builder, tmp_path
        )
        named.use(V010)
        assert [p.name for p in named.registry.proxies()] == ["nvim", "vi"]


class TestSync:
    @pytest.fixture
    def sync_file(self, tmp_path: Path) -> Path:
        return tmp_path / "project" / ".nvim-version"

    @pytest.fixture
    def synced(self, config, registry, fetcher, downloader, builder, tmp_path: Path, sync_file: Path) -> VersionManager:
        return _make_manager(
            replace(config, version_sync_file_location=sync_file), registry, fetcher, downloader, builder, tmp_path
        )

    def test_use_writes_canonical_name(self, synced: VersionManager, sync_file: Path) -> None:
        synced.use(parse("0.10.0"))
        assert sync_file.read_text(encoding="utf-8") == "v0.10.0\n"

    def test_sync_uses_file_contents(self, synced: VersionManager, sync_file: Path) -> None:
        sync_file.parent.mkdir(parents=True)
        sync_file.write_text("  v0.9.5\n", encoding="utf-8")
        outcome = synced.sync()
        assert outcome.installed.token == parse("v0.9.5")
        assert synced.active().token == parse("v0.9.5")

    @pytest.mark.parametrize("contents", ["", "   \n"])
    def test_empty_sync_file(self, synced: VersionManager, sync_file: Path, contents: str) -> None:
        sync_file.parent.mkdir(parents=True)
        sync_file.write_text(contents, encoding="utf-8")
        with pytest.raises(SyncFileError):
            synced.sync()

    def test_rollback_name_in_sync_file(self, synced: VersionManager, sync_file: Path) -> None:
        sync_file.parent.mkdir(parents=True)
        sync_file.write_text("nightly-abc1234-20240101T000000000000", encoding="utf-8")
        with pytest.raises(SyncFileError):
            synced.sync()

    def test_missing_sync_file(self, synced: VersionManager) -> None:
        with pytest.raises(SyncFileError):
            synced.sync()

    def test_sync_not_configured(self, manager: VersionManager) -> None:
        with pytest.raises(SyncFileError):
            manager.sync()


class TestUninstall:
    def test_removable_versions_exclude_active(self, manager: VersionManager) -> None:
        manager.install(V010)
        manager.use(parse("v0.9.5"))
        assert [v.token for v in manager.removable_versions()] == [V010]

    def test_stops_at_first_failure(self, manager: VersionManager) -> None:
        manager.install(V010)
        manager.use(STABLE)
        manager.install(parse("v0.9.5"))
        with pytest.raises(ActiveVersionInUseError):
            manager.uninstall([V010, STABLE, parse("v0.9.5")])
        assert not manager.registry.is_installed(V010)
        assert manager.registry.is_installed(STABLE)
        assert manager.registry.is_installed(parse("v0.9.5"))


class TestUpdate:
    def test_requires_target(self, manager: VersionManager) -> None:
        with pytest.raises(VersionManagerError):
            manager.update()

    def test_only_stable_or_nightly(self, manager: VersionManager) -> None:
        with pytest.raises(VersionManagerError):
            manager.update(V010)

    def test_update_missing_version(self, manager: VersionManager) -> None:
        with pytest.raises(NotInstalledError):
            manager.update(STABLE)

    def test_stable_unchanged(self, manager: VersionManager, downloader: FakeDownloader) -> None:
        manager.install(STABLE)
        outcomes = manager.update(STABLE)
        assert [o.status for o in outcomes] == [InstallStatus.ALREADY_INSTALLED]
        assert downloader.downloads == ["v0.10.0"]

    def test_stable_moved_to_new_release(self, manager: VersionManager, fetcher: FakeFetcher) -> None:
        manager.install(STABLE)
        fetcher.releases["stable"] = _release("v0.10.1", "3", "2024-07-01T00:00:00Z")
        outcomes = manager.update(STABLE)
        assert [o.status for o in outcomes] == [InstallStatus.UPDATED]
        assert manager.registry.get(STABLE).tag_name == "v0.10.1"

    def test_update_all_skips_missing(self, manager: VersionManager, fetcher: FakeFetcher) -> None:
        manager.install(NIGHTLY)
        outcomes = manager.update(update_all=True)
        assert [o.status for o in outcomes] == [InstallStatus.NIGHTLY_UP_TO_DATE]


class TestQueries:
    def test_list_remote_marks_installed(self, manager: VersionManager) -> None:
        manager.install(V010)
        marked = {r.release.tag_name: r.installed for r in manager.list_remote()}
        assert marked == {"v0.10.0": True, "v0.9.5": False, "nightly": False}

    def test_rollback_restores_previous_nightly(self, manager: VersionManager, fetcher: FakeFetcher) -> None:
        manager.use(NIGHTLY)
        fetcher.releases["nightly"] = _release("nightly", "b", "2024-06-02T00:00:00Z")
        manager.use(NIGHTLY)
        restored = manager.rollback()
        assert build_of(restored.install_path) == "nightly-aaaaaaa"
        assert [p.name for p in manager.registry.proxies()] == ["nvim"]

    def test_nightly_updated_while_inactive_can_be_rolled_back(
        self, manager: VersionManager, fetcher: FakeFetcher
    ) -> None:
        manager.use(NIGHTLY)
        manager.use(STABLE)
        fetcher.releases["nightly"] = _release("nightly", "b", "2024-06-02T00:00:00Z")
        outcome = manager.install(NIGHTLY)
        assert outcome.status == InstallStatus.UPDATED
        assert [slot.nightly_id for slot in manager.list_rollbacks()] == ["aaaaaaa"]
        assert manager.active().token == STABLE

        manager.use(NIGHTLY)
        restored = manager.rollback()
        assert build_of(restored.install_path) == "nightly-aaaaaaa"
        assert build_of(manager.active().install_path) == "nightly-aaaaaaa"

    def test_erase(self, manager: VersionManager) -> None:
        manager.use(V010)
        assert manager.erase() is True
        assert manager.erase() is False
        assert manager.list_installed() == []

    @pytest.mark.skipif(os.name != "posix", reason="requires POSIX shell scripts")
    def test_run_without_activation(self, manager: VersionManager) -> None:
        manager.install(V010)
        manager.dispatcher.replace_process = False
        assert manager.run(V010, ["--version"]) == 0
        assert manager.active() is None
