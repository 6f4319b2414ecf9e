"""Preference store: small string key-value persistence in a JSON file"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class PreferenceStore:
    """
    Flat string key-value store backed by one JSON file

    Every write rewrites the file through a temporary file and os.replace,
    so readers never see a half-written document.
    """

    def __init__(self, path: Path):
        """
        Initialize preference store

        Args:
            path: JSON file location (created on first write)
        """
        self.path = Path(path)
        self._lock = threading.RLock()
        self._values: Optional[Dict[str, str]] = None

    def _load(self) -> Dict[str, str]:
        if self._values is not None:
            return self._values

        if not self.path.exists():
            self._values = {}
            return self._values

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load preferences from {self.path}: {e}")
            data = {}

        if not isinstance(data, dict):
            logger.warning(f"Ignoring preferences file with unexpected shape: {self.path}")
            data = {}

        self._values = {str(k): str(v) for k, v in data.items() if v is not None}
        return self._values

    def _save(self, values: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".preferences-", suffix=".json", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(values, f, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        self.update({key: value})

    def update(self, values: Dict[str, str]) -> None:
        """Set several keys with a single file rewrite"""
        with self._lock:
            merged = dict(self._load())
            merged.update(values)
            self._save(merged)
            self._values = merged

    def remove(self, *keys: str) -> None:
        with self._lock:
            values = self._load()
            remaining = {k: v for k, v in values.items() if k not in keys}
            if len(remaining) != len(values):
                self._save(remaining)
                self._values = remaining

    def reload(self) -> None:
        """Drop the in-memory copy so the next read goes to disk"""
        with self._lock:
            self._values = None
