"""Tests for RuntimeManager.

Drives the install state machine end to end: manifest and artifacts come
from an in-memory host, the signing tool and the runtime are small
Python scripts.
"""

import asyncio
from pathlib import Path

import pytest

from runtimehub.core.runtimes.exceptions import (
    AppVersionTooOld,
    Cancelled,
    ChecksumMismatch,
    ManifestInvalid,
    RuntimeNotInstalled,
    UnsupportedArchitecture,
)
from runtimehub.core.runtimes.installer import (
    PROGRESS_CHECKSUM_VERIFIED,
    PROGRESS_DOWNLOAD_STARTED,
    PROGRESS_EXECUTABLE_RESOLVED,
    PROGRESS_EXTRACTED,
    PROGRESS_INSTALLED,
    PROGRESS_MANIFEST_FETCHED,
    PROGRESS_SIGNATURE_VERIFIED,
    PROGRESS_STARTED,
)
from runtimehub.core.runtimes.models import InstallState, InstallStatus

from tests.unit.runtimes.support import (
    EXECUTABLE_NAME,
    make_archive,
    manifest_dict,
    runtime_source,
)


def _archive_for(version: str) -> bytes:
    return make_archive({f"voice-runtime-{version}/{EXECUTABLE_NAME}": runtime_source()})


def _version_dirs(manager):
    if not manager.install_root.exists():
        return []
    return sorted(p.name for p in manager.install_root.iterdir())


async def _wait_for(predicate, attempts: int = 500):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


class TestStartup:
    """State derived from disk without network"""

    def test_fresh_install_is_not_installed(self, make_manager, server):
        manager = make_manager()
        assert manager.state == InstallState.not_installed()
        assert manager.is_installed is False
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_restart_restores_installed_without_network(self, make_manager, server):
        await make_manager().install_or_update()
        request_count = len(server.requests)

        restarted = make_manager()

        assert restarted.state == InstallState.installed("1.2.0")
        assert restarted.installed_version == "1.2.0"
        assert len(server.requests) == request_count

    @pytest.mark.asyncio
    async def test_restart_uses_cached_latest_version(self, make_manager, records):
        await make_manager().install_or_update()
        records.cache_latest_version("voiceTranscribe", "1.3.0")

        restarted = make_manager()

        assert restarted.state == InstallState.update_available("1.2.0", "1.3.0")
        assert restarted.is_installed is True

    @pytest.mark.asyncio
    async def test_missing_executable_on_restart(self, make_manager):
        record = await make_manager().install_or_update()
        Path(record.executable_path).unlink()

        restarted = make_manager()

        assert restarted.state.status == InstallStatus.NOT_INSTALLED
        assert restarted.executable_path is None


class TestInstall:

    @pytest.mark.asyncio
    async def test_install_publishes_progress_then_installed(self, make_manager, records):
        manager = make_manager()
        states = []
        manager.subscribe(states.append)

        record = await manager.install_or_update()

        assert record.installed_version == "1.2.0"
        assert manager.state == InstallState.installed("1.2.0")
        assert [s.progress for s in states if s.status == InstallStatus.INSTALLING] == [
            PROGRESS_STARTED,
            PROGRESS_MANIFEST_FETCHED,
            PROGRESS_DOWNLOAD_STARTED,
            PROGRESS_CHECKSUM_VERIFIED,
            PROGRESS_EXTRACTED,
            PROGRESS_EXECUTABLE_RESOLVED,
            PROGRESS_SIGNATURE_VERIFIED,
            PROGRESS_INSTALLED,
        ]
        assert states[-1] == InstallState.installed("1.2.0")
        assert records.load("voiceTranscribe") == record
        assert records.cached_latest_version("voiceTranscribe") == "1.2.0"
        assert manager.executable_path == manager.install_root / "1.2.0" / EXECUTABLE_NAME
        assert manager.is_busy is False

    @pytest.mark.asyncio
    async def test_checksum_failure_leaves_no_version_directory(self, make_manager, server, archive):
        corrupted = bytearray(archive)
        corrupted[10] ^= 0x01
        server.publish(manifest_dict(archive), bytes(corrupted))
        manager = make_manager()

        with pytest.raises(ChecksumMismatch):
            await manager.install_or_update()

        assert manager.state.status == InstallStatus.FAILED
        assert manager.last_error == "Runtime checksum verification failed."
        assert _version_dirs(manager) == []
        assert manager.is_busy is False

    @pytest.mark.asyncio
    async def test_failed_update_keeps_previous_version(self, make_manager, server):
        manager = make_manager()
        await manager.install_or_update()

        archive = _archive_for("1.3.0")
        manifest = manifest_dict(archive, version="1.3.0")
        manifest["artifacts"][0]["sha256"] = "0" * 64
        server.publish(manifest, archive)

        with pytest.raises(ChecksumMismatch):
            await manager.install_or_update()

        assert _version_dirs(manager) == ["1.2.0"]
        assert manager.executable_path is not None

    @pytest.mark.asyncio
    async def test_record_write_failure_keeps_previous_version_usable(
        self, make_manager, server, records, monkeypatch
    ):
        manager = make_manager()
        await manager.install_or_update()

        archive = _archive_for("1.3.0")
        server.publish(manifest_dict(archive, version="1.3.0"), archive)

        def failing_save(extension_id, record):
            raise OSError("preferences are read-only")

        monkeypatch.setattr(records, "save", failing_save)
        with pytest.raises(OSError, match="read-only"):
            await manager.install_or_update()

        assert manager.state.status == InstallStatus.FAILED
        # Nothing is pruned until the new record is persisted
        assert _version_dirs(manager) == ["1.2.0", "1.3.0"]
        monkeypatch.undo()

        restarted = make_manager()
        assert restarted.state.status == InstallStatus.UPDATE_AVAILABLE
        assert restarted.installed_version == "1.2.0"
        assert Path(restarted.executable_path).is_file()

    @pytest.mark.asyncio
    async def test_protocol_mismatch_aborts_before_artifact_request(self, make_manager, server, archive):
        server.publish(manifest_dict(archive, protocol_version=2), archive)
        manager = make_manager()

        with pytest.raises(ManifestInvalid, match="protocol version"):
            await manager.install_or_update()

        assert server.artifact_requests == []
        assert manager.state.status == InstallStatus.FAILED

    @pytest.mark.asyncio
    async def test_min_app_version_checked_before_download(self, make_manager, server, archive):
        server.publish(manifest_dict(archive, min_app_version="5.0"), archive)
        manager = make_manager(app_version="4.9")

        with pytest.raises(AppVersionTooOld) as exc_info:
            await manager.install_or_update()

        assert exc_info.value.required == "5.0"
        assert exc_info.value.current == "4.9"
        assert server.artifact_requests == []
        assert manager.state.status == InstallStatus.FAILED

    @pytest.mark.asyncio
    async def test_min_app_version_met(self, make_manager, server, archive):
        server.publish(manifest_dict(archive, min_app_version="4.10"), archive)
        manager = make_manager(app_version="4.10.1")

        await manager.install_or_update()

        assert manager.state == InstallState.installed("1.2.0")

    @pytest.mark.asyncio
    async def test_unsupported_architecture(self, make_manager, server):
        manager = make_manager(arch="x86_64")

        with pytest.raises(UnsupportedArchitecture):
            await manager.install_or_update()

        assert server.artifact_requests == []
        assert manager.state.status == InstallStatus.FAILED

    @pytest.mark.asyncio
    async def test_numeric_version_ordering_across_updates(self, make_manager, server):
        manager = make_manager()
        await manager.install_or_update()

        archive = _archive_for("1.10.0")
        server.publish(manifest_dict(archive, version="1.10.0"), archive)

        state = await manager.refresh()
        assert state == InstallState.update_available("1.2.0", "1.10.0")

        record = await manager.install_or_update()
        assert record.installed_version == "1.10.0"
        assert manager.state == InstallState.installed("1.10.0")
        assert _version_dirs(manager) == ["1.10.0"]

    @pytest.mark.asyncio
    async def test_second_install_while_installing_is_a_no_op(self, make_manager, server):
        server.download_gate = asyncio.Event()
        manager = make_manager()
        progress = []
        manager.subscribe(lambda s: progress.append(s.progress) if s.status == InstallStatus.INSTALLING else None)

        first = asyncio.create_task(manager.install_or_update())
        await _wait_for(lambda: len(server.artifact_requests) == 1)
        state_before = manager.state

        assert await manager.install_or_update() is None
        assert manager.state == state_before
        assert await manager.uninstall() is False

        server.download_gate.set()
        record = await first

        assert record.installed_version == "1.2.0"
        assert len(server.manifest_requests) == 1
        assert len(server.artifact_requests) == 1
        assert progress == sorted(progress)
        assert progress[-1] == PROGRESS_INSTALLED

    @pytest.mark.asyncio
    async def test_cancel_install_restores_on_disk_state(self, make_manager, server):
        server.download_gate = asyncio.Event()
        manager = make_manager()

        task = asyncio.create_task(manager.install_or_update())
        await _wait_for(lambda: len(server.artifact_requests) == 1)

        assert manager.cancel_install() is True
        server.download_gate.set()

        with pytest.raises(Cancelled):
            await task

        assert manager.state == InstallState.not_installed()
        assert manager.last_error is None
        assert manager.is_busy is False
        assert _version_dirs(manager) == []
        assert manager.cancel_install() is False


class TestRefresh:

    @pytest.mark.asyncio
    async def test_refresh_without_install(self, make_manager, server):
        manager = make_manager()
        assert await manager.refresh() == InstallState.not_installed()
        assert manager.latest_version == "1.2.0"
        assert "cb" in server.manifest_requests[0].url.params

    @pytest.mark.asyncio
    async def test_refresh_when_current(self, make_manager):
        manager = make_manager()
        await manager.install_or_update()
        assert await manager.refresh() == InstallState.installed("1.2.0")

    @pytest.mark.asyncio
    async def test_offline_refresh_keeps_installed_version(self, make_manager, server):
        manager = make_manager()
        await manager.install_or_update()
        server.offline = True

        assert await manager.refresh() == InstallState.installed("1.2.0")
        assert manager.last_error is None

    @pytest.mark.asyncio
    async def test_invalid_manifest_keeps_installed_version(self, make_manager, server, archive):
        manager = make_manager()
        await manager.install_or_update()
        server.publish(manifest_dict(archive, protocol_version=7), archive)

        assert await manager.refresh() == InstallState.installed("1.2.0")

    @pytest.mark.asyncio
    async def test_offline_refresh_without_install_fails(self, make_manager, server):
        manager = make_manager()
        server.offline = True

        state = await manager.refresh()

        assert state.status == InstallStatus.FAILED
        assert "Manifest request failed" in state.message
        assert manager.last_error == state.message

    @pytest.mark.asyncio
    async def test_refresh_states_are_published(self, make_manager):
        manager = make_manager()
        states = []
        manager.subscribe(states.append)

        await manager.refresh()

        assert [s.status for s in states] == [InstallStatus.CHECKING, InstallStatus.NOT_INSTALLED]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("manifest_status", [200, 503])
    async def test_refresh_completing_during_install_leaves_progress_alone(
        self, make_manager, server, manifest_status
    ):
        manager = make_manager()
        gate = server.manifest_gate = asyncio.Event()
        server.download_gate = asyncio.Event()
        published = []
        manager.subscribe(lambda s: published.append((s.status, manager.is_busy)))

        refresh = asyncio.create_task(manager.refresh())
        await _wait_for(lambda: len(server.manifest_requests) == 1)
        install = asyncio.create_task(manager.install_or_update())
        await _wait_for(lambda: len(server.artifact_requests) == 1)
        in_progress = manager.state

        # Release the held refresh response while the install is mid-download
        server.manifest_status = manifest_status
        gate.set()
        assert await refresh == in_progress
        assert manager.state == in_progress

        server.download_gate.set()
        record = await install

        assert record.installed_version == "1.2.0"
        assert manager.state == InstallState.installed("1.2.0")
        assert {status for status, busy in published if busy} == {
            InstallStatus.INSTALLING,
            InstallStatus.INSTALLED,
        }


class TestUninstall:

    @pytest.mark.asyncio
    async def test_uninstall_then_refresh_ignores_stale_latest(self, make_manager, records):
        manager = make_manager()
        await manager.install_or_update()

        assert await manager.uninstall() is True
        assert manager.state == InstallState.not_installed()
        assert not manager.install_root.exists()
        assert records.load("voiceTranscribe") is None
        assert records.cached_latest_version("voiceTranscribe") == "1.2.0"

        assert await manager.refresh() == InstallState.not_installed()
        assert make_manager().state == InstallState.not_installed()

    @pytest.mark.asyncio
    async def test_uninstall_is_idempotent(self, make_manager):
        manager = make_manager()
        assert await manager.uninstall() is True
        assert await manager.uninstall() is True
        assert manager.state == InstallState.not_installed()


class TestRunCommand:

    @pytest.mark.asyncio
    async def test_run_command_requires_installation(self, make_manager):
        manager = make_manager()
        with pytest.raises(RuntimeNotInstalled) as exc_info:
            await manager.run_command("transcribe", {"audioPath": "/tmp/a.wav"})
        assert exc_info.value.hint

    @pytest.mark.asyncio
    async def test_run_command_calls_installed_runtime(self, make_manager):
        manager = make_manager()
        await manager.install_or_update()

        payload = await manager.run_command("transcribe", {"audioPath": "/tmp/a.wav"}, timeout=10)

        assert payload == {"action": "transcribe", "arguments": {"audioPath": "/tmp/a.wav"}}


def test_unsubscribe_stops_notifications(make_manager):
    manager = make_manager()
    states = []
    unsubscribe = manager.subscribe(states.append)
    unsubscribe()
    unsubscribe()

    manager._set_state(InstallState.checking())

    assert states == []
