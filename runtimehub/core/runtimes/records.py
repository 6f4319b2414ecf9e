"""Persisted install records on top of the preference store"""

import logging
from pathlib import Path
from typing import Optional

from runtimehub.core.runtimes.models import InstallRecord
from runtimehub.core.storage.paths import is_within
from runtimehub.core.storage.preferences import PreferenceStore

logger = logging.getLogger(__name__)


class InstallRecordStore:
    """
    Per-extension install facts

    Keys: <id>.installedVersion, <id>.executablePath and the display-only
    <id>.latestVersion cache.
    """

    def __init__(self, preferences: PreferenceStore):
        self.preferences = preferences

    @staticmethod
    def _key(extension_id: str, name: str) -> str:
        return f"{extension_id}.{name}"

    def load(self, extension_id: str) -> Optional[InstallRecord]:
        version = self.preferences.get(self._key(extension_id, "installedVersion"))
        executable_path = self.preferences.get(self._key(extension_id, "executablePath"))
        if not version or not executable_path:
            return None
        return InstallRecord(installed_version=version, executable_path=executable_path)

    def load_valid(self, extension_id: str, install_root: Path) -> Optional[InstallRecord]:
        """
        Load the record only if its executable exists inside install_root

        A record whose executable vanished or points elsewhere is reported as
        absent; it is left in place for uninstall to clear.
        """
        record = self.load(extension_id)
        if record is None:
            return None

        executable = Path(record.executable_path)
        if not executable.is_file():
            logger.debug(f"Installed executable for {extension_id} is missing: {executable}")
            return None
        if not is_within(executable, install_root):
            logger.warning(
                f"Ignoring install record for {extension_id}: "
                f"{executable} is outside {install_root}"
            )
            return None
        return record

    def save(self, extension_id: str, record: InstallRecord) -> None:
        self.preferences.update({
            self._key(extension_id, "executablePath"): record.executable_path,
            self._key(extension_id, "installedVersion"): record.installed_version,
        })

    def clear(self, extension_id: str) -> None:
        self.preferences.remove(
            self._key(extension_id, "installedVersion"),
            self._key(extension_id, "executablePath"),
        )

    def cached_latest_version(self, extension_id: str) -> Optional[str]:
        return self.preferences.get(self._key(extension_id, "latestVersion"))

    def cache_latest_version(self, extension_id: str, version: str) -> None:
        self.preferences.set(self._key(extension_id, "latestVersion"), version)
