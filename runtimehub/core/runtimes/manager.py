"""
Runtime Manager - install state machine for one external runtime

Startup is two-phase:
1. construction derives state from the persisted record and a filesystem
   probe only (no network), so it is fast and works offline
2. refresh() fetches the manifest and may later upgrade or downgrade that state

The manager is the single writer of InstallState and of the install record.
At most one install or uninstall runs at a time; overlapping calls are
dropped, not queued.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from runtimehub.core.config import RuntimeHubSettings, get_settings
from runtimehub.core.runtimes.artifacts import ArtifactVerifier, host_architecture
from runtimehub.core.runtimes.bridge import CommandBridge
from runtimehub.core.runtimes.exceptions import (
    AppVersionTooOld,
    Cancelled,
    RuntimeHubError,
    RuntimeNotInstalled,
)
from runtimehub.core.runtimes.installer import (
    PROGRESS_INSTALLED,
    PROGRESS_MANIFEST_FETCHED,
    PROGRESS_STARTED,
    CancellationToken,
    RuntimeInstaller,
)
from runtimehub.core.runtimes.manifest import ManifestFetcher
from runtimehub.core.runtimes.models import (
    InstallRecord,
    InstallState,
    InstallStatus,
    RuntimeDescriptor,
    RuntimeManifest,
)
from runtimehub.core.runtimes.records import InstallRecordStore
from runtimehub.core.runtimes.signature import CodesignVerifier
from runtimehub.core.runtimes.versioning import compare_versions, is_newer
from runtimehub.core.storage.preferences import PreferenceStore

logger = logging.getLogger(__name__)

StateListener = Callable[[InstallState], None]


class RuntimeManager:
    """Owns install state for one runtime and drives its installer"""

    def __init__(
        self,
        descriptor: RuntimeDescriptor,
        settings: RuntimeHubSettings,
        records: InstallRecordStore,
        fetcher: ManifestFetcher,
        artifacts: ArtifactVerifier,
        installer: RuntimeInstaller,
        app_version: Optional[str] = None,
        arch: Optional[str] = None
    ):
        self.descriptor = descriptor
        self.settings = settings
        self.records = records
        self.fetcher = fetcher
        self.artifacts = artifacts
        self.installer = installer
        self.app_version = app_version or settings.app_version
        self.arch = arch or host_architecture()

        self._state = InstallState.checking()
        self._listeners: List[StateListener] = []
        self._busy = False
        self._token: Optional[CancellationToken] = None

        self.installed_version: Optional[str] = None
        self.latest_version: Optional[str] = records.cached_latest_version(descriptor.id)
        self.last_error: Optional[str] = None

        self._recompute_state_without_network()

    @classmethod
    def create(
        cls,
        descriptor: RuntimeDescriptor,
        settings: Optional[RuntimeHubSettings] = None,
        records: Optional[InstallRecordStore] = None,
        signature: Optional[CodesignVerifier] = None,
        **kwargs: Any
    ) -> "RuntimeManager":
        """Wire a manager and its components from settings"""
        settings = settings or get_settings()
        records = records or InstallRecordStore(PreferenceStore(settings.preferences_path))
        fetcher = ManifestFetcher(descriptor, timeout=settings.manifest_timeout)
        artifacts = ArtifactVerifier(
            timeout=settings.download_timeout,
            max_size=settings.max_artifact_size,
            max_retries=settings.download_retries
        )
        installer = RuntimeInstaller(
            extension_id=descriptor.id,
            install_root=settings.install_root_for(descriptor.id),
            artifacts=artifacts,
            signature=signature or CodesignVerifier(settings.codesign_path)
        )
        return cls(descriptor, settings, records, fetcher, artifacts, installer, **kwargs)

    # ============================================
    # State
    # ============================================

    @property
    def extension_id(self) -> str:
        return self.descriptor.id

    @property
    def install_root(self) -> Path:
        return self.installer.install_root

    @property
    def state(self) -> InstallState:
        return self._state

    @property
    def is_installed(self) -> bool:
        return self._state.status in (InstallStatus.INSTALLED, InstallStatus.UPDATE_AVAILABLE)

    @property
    def is_installing(self) -> bool:
        return self._state.status == InstallStatus.INSTALLING

    @property
    def is_busy(self) -> bool:
        """True while an install or uninstall is in flight"""
        return self._busy

    @property
    def install_progress(self) -> float:
        return self._state.progress if self.is_installing else 0.0

    @property
    def executable_path(self) -> Optional[Path]:
        record = self._load_record()
        return Path(record.executable_path) if record else None

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """
        Register a state listener

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: InstallState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.warning(f"State listener failed for {self.extension_id}: {e}", exc_info=True)

    def _load_record(self) -> Optional[InstallRecord]:
        return self.records.load_valid(self.extension_id, self.install_root)

    def _recompute_state_without_network(self) -> None:
        record = self._load_record()
        if record is None:
            self.installed_version = None
            self._set_state(InstallState.not_installed())
            return

        self.installed_version = record.installed_version
        if self.latest_version and is_newer(self.latest_version, record.installed_version):
            self._set_state(InstallState.update_available(record.installed_version, self.latest_version))
        else:
            self._set_state(InstallState.installed(record.installed_version))

    def _remember_latest(self, manifest: RuntimeManifest) -> None:
        self.latest_version = manifest.version
        self.records.cache_latest_version(self.extension_id, manifest.version)

    def _report_progress(self, progress: float) -> None:
        self._set_state(InstallState.installing(progress))

    def _yield_to_busy_operation(self) -> InstallState:
        # An install or uninstall started while the manifest was in flight; it owns the state
        logger.debug(f"Discarding refresh result for {self.extension_id}: install or uninstall in progress")
        return self._state

    # ============================================
    # Operations
    # ============================================

    async def refresh(self) -> InstallState:
        """
        Re-check the remote manifest against the installed version

        Fetch or validation errors keep a still-present installation in
        Installed(previous) and only become Failed when nothing is installed.

        Returns:
            The resulting state
        """
        if self._busy:
            logger.debug(f"Skipping refresh of {self.extension_id}: install or uninstall in progress")
            return self._state

        self._set_state(InstallState.checking())
        self.last_error = None

        try:
            manifest = await self.fetcher.fetch()
            self._remember_latest(manifest)
            self.artifacts.select(manifest, self.arch)
        except RuntimeHubError as e:
            if self._busy:
                return self._yield_to_busy_operation()
            record = self._load_record()
            if record is not None:
                logger.warning(
                    f"Runtime refresh failed for {self.extension_id} ({e}); "
                    f"keeping installed version {record.installed_version}"
                )
                self.installed_version = record.installed_version
                self._set_state(InstallState.installed(record.installed_version))
            else:
                logger.error(f"Runtime refresh failed for {self.extension_id}: {e}")
                self.last_error = e.message
                self._set_state(InstallState.failed(e.message))
            return self._state

        if self._busy:
            return self._yield_to_busy_operation()

        record = self._load_record()
        if record is None:
            self.installed_version = None
            self._set_state(InstallState.not_installed())
        elif compare_versions(record.installed_version, manifest.version) < 0:
            self.installed_version = record.installed_version
            self._set_state(InstallState.update_available(record.installed_version, manifest.version))
        else:
            self.installed_version = record.installed_version
            self._set_state(InstallState.installed(record.installed_version))

        logger.info(f"Runtime {self.extension_id}: {self._state.describe()}")
        return self._state

    def _check_app_version(self, manifest: RuntimeManifest) -> None:
        if manifest.min_app_version and compare_versions(self.app_version, manifest.min_app_version) < 0:
            raise AppVersionTooOld(required=manifest.min_app_version, current=self.app_version)

    async def install_or_update(self) -> Optional[InstallRecord]:
        """
        Install the latest runtime version, or update to it

        Returns:
            The persisted InstallRecord, or None if another operation was in flight

        Raises:
            RuntimeHubError subclasses; the state is Failed(message) first,
            except for Cancelled which restores the on-disk state
        """
        if self._busy:
            logger.info(f"Runtime {self.extension_id} install already in progress; ignoring request")
            return None

        self._busy = True
        token = CancellationToken()
        self._token = token
        self.last_error = None

        try:
            self._set_state(InstallState.installing(PROGRESS_STARTED))
            manifest = await self.fetcher.fetch()
            self._remember_latest(manifest)
            token.raise_if_cancelled()

            artifact = self.artifacts.select(manifest, self.arch)
            self._check_app_version(manifest)
            self._set_state(InstallState.installing(PROGRESS_MANIFEST_FETCHED))

            logger.info(
                f"Installing runtime {self.extension_id} v{manifest.version} "
                f"({artifact.arch}, {artifact.size_bytes / 1024 / 1024:.1f}MB)"
            )
            record = await self.installer.install(
                manifest, artifact, token=token, progress=self._report_progress
            )

            self.records.save(self.extension_id, record)
            await asyncio.to_thread(self.installer.prune, record.installed_version)
            self.installed_version = record.installed_version
            self._set_state(InstallState.installing(PROGRESS_INSTALLED))
            self._set_state(InstallState.installed(record.installed_version))
            return record

        except Cancelled:
            logger.info(f"Runtime {self.extension_id} install cancelled")
            self._recompute_state_without_network()
            raise
        except asyncio.CancelledError:
            self._recompute_state_without_network()
            raise
        except RuntimeHubError as e:
            logger.error(f"Runtime {self.extension_id} install failed: {e}")
            self.last_error = e.message
            self._set_state(InstallState.failed(e.message))
            raise
        except Exception as e:
            logger.error(f"Unexpected error installing runtime {self.extension_id}: {e}", exc_info=True)
            message = str(e) or "Runtime installation failed."
            self.last_error = message
            self._set_state(InstallState.failed(message))
            raise
        finally:
            self._busy = False
            self._token = None

    def cancel_install(self) -> bool:
        """
        Request cancellation of the running install

        Returns:
            True if an install was running
        """
        if self._token is None:
            return False
        logger.info(f"Cancellation requested for runtime {self.extension_id}")
        self._token.cancel()
        return True

    async def uninstall(self) -> bool:
        """
        Remove every installed version and the install record

        Safe to call when nothing is installed.

        Returns:
            False if dropped because another operation was in flight
        """
        if self._busy:
            logger.info(f"Runtime {self.extension_id} is busy; ignoring uninstall request")
            return False

        self._busy = True
        try:
            await asyncio.to_thread(self.installer.remove_all)
            self.records.clear(self.extension_id)
            self.installed_version = None
            self.last_error = None
            self._set_state(InstallState.not_installed())
            logger.info(f"Runtime {self.extension_id} uninstalled")
            return True
        except RuntimeHubError as e:
            logger.error(f"Runtime {self.extension_id} uninstall failed: {e}")
            self.last_error = e.message
            self._set_state(InstallState.failed(e.message))
            raise
        finally:
            self._busy = False

    async def run_command(
        self,
        action: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Run one command in the installed runtime

        Args:
            action: Runtime action name
            arguments: JSON-serializable arguments
            timeout: Seconds to wait (settings.command_timeout if omitted)

        Raises:
            RuntimeNotInstalled: If no installed executable exists
            ProcessFailed, IPCInvalidResponse, IPCHelperError, CommandTimeout
        """
        executable = self.executable_path
        if executable is None:
            raise RuntimeNotInstalled(self.extension_id)

        bridge = CommandBridge(
            executable,
            rpc_argument=self.settings.rpc_argument,
            max_output_bytes=self.settings.max_output_bytes,
            kill_on_timeout=self.settings.kill_on_timeout
        )
        return await bridge.call(
            action,
            arguments,
            timeout=timeout if timeout is not None else self.settings.command_timeout
        )
