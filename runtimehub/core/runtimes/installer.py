"""Installer for runtime archives

Install protocol (each step checks the cancellation token before it starts):

1. create an isolated temporary working directory
2. download the archive
3. verify its SHA256
4. extract it (entries escaping the extraction directory abort the install)
5. resolve the runtime root (a single top-level directory is unwrapped)
6. locate the executable by name (root first, then recursive search)
7. compute its path relative to the runtime root
8. add execute permission bits
9. verify the code signature
10. publish atomically: copy into a hidden staging directory under the
    install root, then rename it onto <install root>/<version>

The temporary working directory is removed on every exit path.
"""

import asyncio
import logging
import os
import shutil
import stat
import tarfile
import tempfile
import uuid
from pathlib import Path, PurePosixPath
from typing import Callable, Optional

from runtimehub.core.runtimes.artifacts import ArtifactVerifier
from runtimehub.core.runtimes.exceptions import (
    Cancelled,
    ExecutableMissing,
    InstallationError,
    PathEscape,
)
from runtimehub.core.runtimes.models import InstallRecord, RuntimeArtifact, RuntimeManifest
from runtimehub.core.runtimes.signature import CodesignVerifier
from runtimehub.core.storage.paths import is_within, runtime_version_dir

logger = logging.getLogger(__name__)

# Progress milestones (fraction of the whole install)
PROGRESS_STARTED = 0.02
PROGRESS_MANIFEST_FETCHED = 0.08
PROGRESS_DOWNLOAD_STARTED = 0.12
PROGRESS_CHECKSUM_VERIFIED = 0.45
PROGRESS_EXTRACTED = 0.58
PROGRESS_EXECUTABLE_RESOLVED = 0.70
PROGRESS_SIGNATURE_VERIFIED = 0.86
PROGRESS_INSTALLED = 1.0

STAGING_PREFIX = ".staging-"
EXECUTE_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH

ProgressCallback = Callable[[float], None]


class CancellationToken:
    """Cooperative cancellation flag checked between install steps"""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise Cancelled()


def _check_member(member: tarfile.TarInfo, target_dir: Path) -> None:
    """Reject archive entries that would land outside target_dir"""
    name = member.name
    parts = PurePosixPath(name).parts
    if name.startswith("/") or PurePosixPath(name).is_absolute():
        raise PathEscape(f"Absolute path detected in runtime archive: {name}")
    if ".." in parts:
        raise PathEscape(f"Path traversal detected in runtime archive: {name}")
    if not is_within(target_dir / name, target_dir):
        raise PathEscape(f"Archive entry would escape the extraction directory: {name}")

    if member.issym():
        if member.linkname.startswith("/"):
            raise PathEscape(f"Absolute symlink in runtime archive: {name} -> {member.linkname}")
        link_target = target_dir / PurePosixPath(name).parent / member.linkname
        if not is_within(link_target, target_dir):
            raise PathEscape(f"Symlink escapes the extraction directory: {name} -> {member.linkname}")
    elif member.islnk():
        if not is_within(target_dir / member.linkname, target_dir):
            raise PathEscape(f"Hard link escapes the extraction directory: {name} -> {member.linkname}")


def extract_archive(archive_path: Path, target_dir: Path) -> None:
    """
    Extract a gzip tar archive with path traversal protection

    Raises:
        PathEscape: If any entry resolves outside target_dir
        InstallationError: If the archive cannot be read
    """
    logger.info(f"Extracting {archive_path.name} to {target_dir}")
    target_dir.mkdir(parents=True, exist_ok=True)
    target_resolved = target_dir.resolve()

    try:
        with tarfile.open(archive_path, "r:gz") as tar:
            members = tar.getmembers()
            for member in members:
                _check_member(member, target_resolved)
            tar.extractall(target_resolved, members=members, filter="data")
    except (
        tarfile.AbsolutePathError,
        tarfile.OutsideDestinationError,
        tarfile.AbsoluteLinkError,
        tarfile.LinkOutsideDestinationError,
    ) as e:
        raise PathEscape(f"Runtime archive entry rejected: {e}") from e
    except (tarfile.TarError, OSError, EOFError) as e:
        raise InstallationError(f"Failed to extract runtime archive: {e}") from e

    logger.info(f"Extraction complete: {target_dir}")


def resolve_runtime_root(extracted_dir: Path) -> Path:
    """Descend into the single top-level directory if that is all the archive holds"""
    entries = [p for p in extracted_dir.iterdir() if not p.name.startswith(".")]
    if len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
        logger.debug(f"Runtime root directory: {entries[0].name}")
        return entries[0]
    return extracted_dir


def find_executable(runtime_root: Path, executable_name: str) -> Path:
    """
    Locate the runtime executable

    Raises:
        ExecutableMissing: If no file of that name exists under runtime_root
    """
    direct = runtime_root / executable_name
    if direct.is_file():
        return direct

    for dirpath, dirnames, filenames in os.walk(runtime_root):
        dirnames.sort()
        if executable_name in filenames:
            candidate = Path(dirpath) / executable_name
            if candidate.is_file():
                return candidate

    raise ExecutableMissing(executable_name)


def relative_executable_path(executable: Path, runtime_root: Path) -> PurePosixPath:
    """
    Path of the executable relative to runtime_root, symlinks resolved

    Raises:
        PathEscape: If the executable resolves outside runtime_root
    """
    try:
        relative = executable.resolve().relative_to(runtime_root.resolve())
    except ValueError:
        raise PathEscape(
            f"Runtime executable path was outside extracted package: {executable}"
        )
    return PurePosixPath(relative.as_posix())


def ensure_executable_bits(executable: Path) -> None:
    mode = executable.stat().st_mode
    executable.chmod(stat.S_IMODE(mode) | EXECUTE_BITS)


class RuntimeInstaller:
    """Runs the install protocol for one extension's install root"""

    def __init__(
        self,
        extension_id: str,
        install_root: Path,
        artifacts: ArtifactVerifier,
        signature: CodesignVerifier,
        temp_dir: Optional[Path] = None
    ):
        """
        Initialize installer

        Args:
            extension_id: Extension ID (used for naming and logging)
            install_root: Directory holding one subdirectory per installed version
            artifacts: Artifact downloader/verifier
            signature: Code-signature verifier
            temp_dir: Parent directory for temporary working directories (system default if omitted)
        """
        self.extension_id = extension_id
        self.install_root = install_root
        self.artifacts = artifacts
        self.signature = signature
        self.temp_dir = temp_dir

    async def install(
        self,
        manifest: RuntimeManifest,
        artifact: RuntimeArtifact,
        token: Optional[CancellationToken] = None,
        progress: Optional[ProgressCallback] = None
    ) -> InstallRecord:
        """
        Download, verify and publish one runtime version

        Returns:
            InstallRecord for the published version (not yet persisted;
            older versions stay on disk until prune)

        Raises:
            NetworkError, ChecksumMismatch, PathEscape, ExecutableMissing,
            SignatureInvalid, InstallationError, Cancelled
        """
        token = token or CancellationToken()
        report = progress or (lambda value: None)

        token.raise_if_cancelled()
        with tempfile.TemporaryDirectory(
            prefix=f"runtimehub_{self.extension_id}_", dir=self.temp_dir
        ) as temp_dir:
            work_dir = Path(temp_dir)
            archive_path = work_dir / "runtime.tar.gz"
            extracted_dir = work_dir / "extracted"
            extracted_dir.mkdir()

            token.raise_if_cancelled()
            report(PROGRESS_DOWNLOAD_STARTED)
            data = await self.artifacts.download(artifact.url)

            token.raise_if_cancelled()
            self.artifacts.verify_checksum(data, artifact.sha256)
            archive_path.write_bytes(data)
            del data
            report(PROGRESS_CHECKSUM_VERIFIED)

            token.raise_if_cancelled()
            await asyncio.to_thread(extract_archive, archive_path, extracted_dir)
            report(PROGRESS_EXTRACTED)

            token.raise_if_cancelled()
            runtime_root = resolve_runtime_root(extracted_dir)
            executable = find_executable(runtime_root, manifest.executable_name)
            relative_path = relative_executable_path(executable, runtime_root)
            ensure_executable_bits(executable)
            report(PROGRESS_EXECUTABLE_RESOLVED)

            token.raise_if_cancelled()
            await self.signature.verify(executable, artifact.team_id)
            report(PROGRESS_SIGNATURE_VERIFIED)

            token.raise_if_cancelled()
            version_dir = await asyncio.to_thread(self.publish, runtime_root, manifest.version)

        executable_path = version_dir.joinpath(*relative_path.parts)
        logger.info(f"Runtime installed: {self.extension_id} v{manifest.version} -> {executable_path}")
        return InstallRecord(
            installed_version=manifest.version,
            executable_path=str(executable_path)
        )

    def publish(self, runtime_root: Path, version: str) -> Path:
        """
        Atomically publish runtime_root as <install root>/<version>

        The version directory only ever appears through a single rename of a
        fully populated staging directory.

        Raises:
            InstallationError: If copying or renaming fails
        """
        destination = runtime_version_dir(self.install_root, version)
        staging = self.install_root / f"{STAGING_PREFIX}{uuid.uuid4().hex}"

        try:
            self.install_root.mkdir(parents=True, exist_ok=True)
            shutil.copytree(runtime_root, staging, symlinks=True)

            if destination.is_symlink() or destination.is_file():
                destination.unlink()
            elif destination.exists():
                shutil.rmtree(destination)

            os.replace(staging, destination)
        except OSError as e:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
            raise InstallationError(f"Failed to publish runtime {version}: {e}") from e

        logger.info(f"Published runtime {self.extension_id} v{version}: {destination}")
        return destination

    def prune(self, keep_version: str) -> None:
        """
        Remove other versions and abandoned staging directories

        Called only once the record for keep_version is persisted, so the
        recorded executable never points into a deleted directory.
        """
        if not self.install_root.exists():
            return
        keep = runtime_version_dir(self.install_root, keep_version)
        for entry in self.install_root.iterdir():
            if entry == keep:
                continue
            try:
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
                logger.info(f"Removed stale runtime entry: {entry}")
            except OSError as e:
                logger.warning(f"Failed to remove stale runtime entry {entry}: {e}")

    def remove_all(self) -> bool:
        """
        Delete the whole install root

        Returns:
            True if anything was removed

        Raises:
            InstallationError: If removal fails
        """
        if not self.install_root.exists():
            return False

        logger.info(f"Removing runtime files: {self.install_root}")
        try:
            shutil.rmtree(self.install_root)
        except OSError as e:
            raise InstallationError(f"Failed to remove runtime files: {e}") from e
        return True
