"""Shared fixtures for runtime tests"""

from pathlib import Path
from typing import Optional

import pytest

from runtimehub.core.config import RuntimeHubSettings
from runtimehub.core.runtimes.artifacts import ArtifactVerifier
from runtimehub.core.runtimes.installer import RuntimeInstaller
from runtimehub.core.runtimes.manager import RuntimeManager
from runtimehub.core.runtimes.manifest import ManifestFetcher
from runtimehub.core.runtimes.models import RuntimeDescriptor
from runtimehub.core.runtimes.records import InstallRecordStore
from runtimehub.core.runtimes.signature import CodesignVerifier
from runtimehub.core.storage.preferences import PreferenceStore

from tests.unit.runtimes.support import (
    EXECUTABLE_NAME,
    EXTENSION_ID,
    MANIFEST_URL,
    TEAM_ID,
    RuntimeServer,
    make_archive,
    manifest_dict,
    runtime_source,
    write_script,
)


@pytest.fixture
def settings(tmp_path) -> RuntimeHubSettings:
    return RuntimeHubSettings(
        _env_file=None,
        app_support_root=tmp_path / "support",
        app_version="1.0.0",
    )


@pytest.fixture
def descriptor() -> RuntimeDescriptor:
    return RuntimeDescriptor(id=EXTENSION_ID, manifest_url=MANIFEST_URL, name="Voice Transcribe")


@pytest.fixture
def codesign(tmp_path) -> Path:
    """Stand-in for the code-signing tool that reports TEAM_ID on stderr"""
    return write_script(
        tmp_path / "bin" / "codesign",
        f"""
import sys
sys.stderr.write("Executable=" + sys.argv[-1] + "\\n")
sys.stderr.write("Authority=Developer ID Application\\n")
sys.stderr.write("TeamIdentifier={TEAM_ID}\\n")
""",
    )


@pytest.fixture
def archive() -> bytes:
    return make_archive({f"voice-runtime-1.2.0/{EXECUTABLE_NAME}": runtime_source()})


@pytest.fixture
def server(archive) -> RuntimeServer:
    return RuntimeServer(manifest_dict(archive), archive)


@pytest.fixture
def records(settings) -> InstallRecordStore:
    return InstallRecordStore(PreferenceStore(settings.preferences_path))


@pytest.fixture
def make_manager(settings, descriptor, codesign, records, server, tmp_path):
    """Factory building a RuntimeManager wired to the in-memory server"""

    def factory(app_version: Optional[str] = None, arch: str = "arm64") -> RuntimeManager:
        client = server.client()
        fetcher = ManifestFetcher(descriptor, client=client)
        artifacts = ArtifactVerifier(client=client)
        work_dir = tmp_path / "work"
        work_dir.mkdir(exist_ok=True)
        installer = RuntimeInstaller(
            extension_id=descriptor.id,
            install_root=settings.install_root_for(descriptor.id),
            artifacts=artifacts,
            signature=CodesignVerifier(str(codesign)),
            temp_dir=work_dir,
        )
        return RuntimeManager(
            descriptor, settings, records, fetcher, artifacts, installer,
            app_version=app_version, arch=arch
        )

    return factory
