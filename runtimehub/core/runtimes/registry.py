"""Runtime registry: the set of runtimes this installation knows about

Descriptors are read from a YAML file:

    runtimes:
      - id: voiceTranscribe
        name: Voice Transcribe
        manifest_url: https://example.com/voice/manifest.json
        protocol_version: 1
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Union

import yaml
from pydantic import ValidationError

from runtimehub.core.runtimes.exceptions import ConfigurationError
from runtimehub.core.runtimes.models import RuntimeDescriptor

logger = logging.getLogger(__name__)


class RuntimeRegistry:
    """In-memory lookup of runtime descriptors by extension id"""

    def __init__(self, descriptors: Iterable[RuntimeDescriptor] = ()):
        self._descriptors: Dict[str, RuntimeDescriptor] = {}
        for descriptor in descriptors:
            self.add(descriptor)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "RuntimeRegistry":
        """
        Load descriptors from a YAML file

        A missing file yields an empty registry.

        Raises:
            ConfigurationError: If the file is unreadable or malformed
        """
        path = Path(path)
        if not path.exists():
            logger.info(f"No runtime descriptor file at {path}")
            return cls()

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Failed to read runtime descriptors from {path}: {e}"
            ) from e

        return cls.from_dict(data or {}, source=str(path))

    @classmethod
    def from_dict(cls, data: dict, source: str = "<dict>") -> "RuntimeRegistry":
        if not isinstance(data, dict):
            raise ConfigurationError(f"Runtime descriptor document must be a mapping: {source}")

        entries = data.get("runtimes")
        if entries is None:
            entries = []
        if not isinstance(entries, list):
            raise ConfigurationError(f"'runtimes' must be a list: {source}")

        registry = cls()
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise ConfigurationError(f"Runtime entry #{index} must be a mapping: {source}")
            try:
                descriptor = RuntimeDescriptor.model_validate(entry)
            except ValidationError as e:
                first = e.errors()[0]
                location = ".".join(str(part) for part in first.get("loc", ()))
                raise ConfigurationError(
                    f"Invalid runtime entry #{index} in {source}: {location}: {first.get('msg')}"
                ) from e
            registry.add(descriptor)

        logger.debug(f"Loaded {len(registry)} runtime descriptors from {source}")
        return registry

    def add(self, descriptor: RuntimeDescriptor) -> None:
        if descriptor.id in self._descriptors:
            raise ConfigurationError(f"Duplicate runtime id: {descriptor.id}")
        self._descriptors[descriptor.id] = descriptor

    def get(self, extension_id: str) -> RuntimeDescriptor:
        """
        Raises:
            ConfigurationError: If no runtime has that id
        """
        descriptor = self._descriptors.get(extension_id)
        if descriptor is None:
            known = ", ".join(sorted(self._descriptors)) or "none"
            raise ConfigurationError(
                f"Unknown runtime: {extension_id}",
                hint=f"Known runtimes: {known}"
            )
        return descriptor

    def list(self) -> List[RuntimeDescriptor]:
        return sorted(self._descriptors.values(), key=lambda d: d.id)

    def __contains__(self, extension_id: str) -> bool:
        return extension_id in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)
