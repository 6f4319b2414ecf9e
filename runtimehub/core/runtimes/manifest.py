"""Manifest fetcher for runtime descriptors"""

import json
import logging
import time
from typing import Optional

import httpx
from pydantic import ValidationError

from runtimehub import __version__
from runtimehub.core.runtimes.exceptions import ManifestInvalid, NetworkError
from runtimehub.core.runtimes.models import RuntimeDescriptor, RuntimeManifest

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
MAX_MANIFEST_SIZE = 256 * 1024  # 256KB
USER_AGENT = f"RuntimeHub-Runtime-Installer/{__version__}"


class ManifestFetcher:
    """Fetches and validates the remote manifest of one runtime"""

    def __init__(
        self,
        descriptor: RuntimeDescriptor,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT
    ):
        """
        Initialize fetcher

        Args:
            descriptor: Runtime whose manifest is fetched
            client: Shared HTTP client (a short-lived one is created per request if omitted)
            timeout: Request timeout in seconds
        """
        self.descriptor = descriptor
        self.client = client
        self.timeout = timeout

    @staticmethod
    def cache_busting_params() -> dict:
        """Query parameters that defeat intermediate caches"""
        return {"cb": str(int(time.time() * 1000))}

    async def fetch(self) -> RuntimeManifest:
        """
        Fetch and validate the manifest

        Returns:
            Validated RuntimeManifest

        Raises:
            NetworkError: On transport failure or non-2xx status
            ManifestInvalid: On decode, schema or compatibility failure
        """
        url = self.descriptor.manifest_url
        logger.info(f"Fetching runtime manifest for {self.descriptor.id}: {url}")

        try:
            response = await self._get(url)
        except httpx.HTTPError as e:
            raise NetworkError(f"Manifest request failed: {e}") from e

        if not response.is_success:
            raise NetworkError(
                f"Manifest request failed with HTTP {response.status_code}.",
                status_code=response.status_code
            )

        manifest = self.parse(response.content)
        logger.info(
            f"Manifest fetched: {manifest.id} v{manifest.version} "
            f"({len(manifest.artifacts)} artifacts)"
        )
        return manifest

    async def _get(self, url: str) -> httpx.Response:
        headers = {"User-Agent": USER_AGENT, "Cache-Control": "no-cache"}
        params = self.cache_busting_params()
        if self.client is not None:
            return await self.client.get(
                url, params=params, headers=headers, timeout=self.timeout, follow_redirects=True
            )
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            return await client.get(url, params=params, headers=headers)

    def parse(self, data: bytes) -> RuntimeManifest:
        """
        Decode and validate manifest bytes

        Raises:
            ManifestInvalid: If the document is not an acceptable manifest
        """
        if len(data) > MAX_MANIFEST_SIZE:
            raise ManifestInvalid(
                f"Manifest too large: {len(data) / 1024:.2f}KB (max: {MAX_MANIFEST_SIZE / 1024:.0f}KB)."
            )

        try:
            raw = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ManifestInvalid(f"Manifest could not be decoded: {e}") from e

        if not isinstance(raw, dict):
            raise ManifestInvalid("Manifest must be a JSON object.")

        try:
            manifest = RuntimeManifest.model_validate(raw)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            raise ManifestInvalid(
                f"Manifest could not be decoded: {location or 'manifest'}: {first.get('msg')}"
            ) from e

        self.validate(manifest)
        return manifest

    def validate(self, manifest: RuntimeManifest) -> None:
        """
        Check the manifest against this runtime's expectations

        Raises:
            ManifestInvalid: On id, protocol, executable or artifact problems
        """
        if manifest.id != self.descriptor.id:
            raise ManifestInvalid(f"Unexpected extension id '{manifest.id}'.")

        if manifest.protocol_version != self.descriptor.protocol_version:
            raise ManifestInvalid(
                f"Unsupported protocol version {manifest.protocol_version}. "
                f"Expected {self.descriptor.protocol_version}.",
                hint="Update the application to install this runtime version"
            )

        if not manifest.executable_name.strip():
            raise ManifestInvalid("Manifest executable name is empty.")

        if not manifest.artifacts:
            raise ManifestInvalid("Manifest has no artifacts.")
