"""Artifact selection, download and checksum verification"""

import asyncio
import hashlib
import logging
import platform
import time
from typing import Callable, Optional

import httpx

from runtimehub.core.runtimes.exceptions import (
    ChecksumMismatch,
    NetworkError,
    UnsupportedArchitecture,
)
from runtimehub.core.runtimes.manifest import USER_AGENT
from runtimehub.core.runtimes.models import RuntimeArtifact, RuntimeManifest

logger = logging.getLogger(__name__)

# Download limits
DEFAULT_MAX_SIZE = 1024 * 1024 * 1024  # 1GB
DEFAULT_TIMEOUT = 300.0  # 5 minutes
CHUNK_SIZE = 64 * 1024  # 64KB chunks

# Retry policy: transport errors and these statuses, with exponential backoff
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_FACTOR = 1.0
RETRY_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

_ARCH_ALIASES = {
    "aarch64": "arm64",
    "arm64": "arm64",
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "x64": "x86_64",
}


def host_architecture() -> str:
    """Host CPU architecture in manifest vocabulary (arm64, x86_64)"""
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine or "unknown")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ArtifactVerifier:
    """Selects, downloads and verifies runtime artifacts"""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_size: int = DEFAULT_MAX_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    ):
        """
        Initialize verifier

        Args:
            client: Shared HTTP client (a short-lived one is created per download if omitted)
            timeout: Download timeout in seconds
            max_size: Maximum artifact size in bytes
            max_retries: Retry attempts after a transient failure
            backoff_factor: Delay before retry n is backoff_factor * 2 ** (n - 1) seconds
        """
        self.client = client
        self.timeout = timeout
        self.max_size = max_size
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor

    @staticmethod
    def select(manifest: RuntimeManifest, arch: str) -> RuntimeArtifact:
        """
        Pick the artifact built for arch

        Raises:
            UnsupportedArchitecture: If the manifest has none
        """
        for artifact in manifest.artifacts:
            if artifact.arch == arch:
                return artifact
        raise UnsupportedArchitecture(arch)

    async def download(
        self,
        url: str,
        progress_callback: Optional[Callable[[int, int], None]] = None
    ) -> bytes:
        """
        Download an artifact into memory

        Args:
            url: Artifact URL
            progress_callback: Callback function (downloaded_bytes, total_bytes)

        Returns:
            The complete response body

        Raises:
            NetworkError: On transport failure, non-2xx status, or size limit
        """
        logger.info(f"Starting download from: {url}")

        attempt = 0
        while True:
            try:
                return await self._download_once(url, progress_callback)
            except NetworkError as e:
                if attempt >= self.max_retries or not self._is_transient(e):
                    raise
                attempt += 1
                delay = self.backoff_factor * (2 ** (attempt - 1))
                logger.warning(
                    f"Download attempt {attempt} failed ({e}); retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

    @staticmethod
    def _is_transient(error: NetworkError) -> bool:
        if error.status_code in RETRY_STATUS_CODES:
            return True
        return isinstance(error.__cause__, httpx.TransportError)

    async def _download_once(
        self,
        url: str,
        progress_callback: Optional[Callable[[int, int], None]]
    ) -> bytes:
        try:
            if self.client is not None:
                return await self._stream(self.client, url, progress_callback)
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                return await self._stream(client, url, progress_callback)
        except httpx.HTTPError as e:
            raise NetworkError(f"Runtime download failed: {e}") from e

    async def _stream(
        self,
        client: httpx.AsyncClient,
        url: str,
        progress_callback: Optional[Callable[[int, int], None]]
    ) -> bytes:
        start_time = time.monotonic()
        headers = {"User-Agent": USER_AGENT}

        async with client.stream(
            "GET", url, headers=headers, timeout=self.timeout, follow_redirects=True
        ) as response:
            if not response.is_success:
                raise NetworkError(
                    f"Runtime download failed with HTTP {response.status_code}.",
                    status_code=response.status_code
                )

            content_length = response.headers.get("Content-Length")
            total_size = int(content_length) if content_length and content_length.isdigit() else 0
            if total_size > self.max_size:
                raise NetworkError(
                    f"Runtime archive too large: {total_size / 1024 / 1024:.2f}MB "
                    f"(max: {self.max_size / 1024 / 1024:.0f}MB)"
                )

            buffer = bytearray()
            async for chunk in response.aiter_bytes(CHUNK_SIZE):
                buffer.extend(chunk)

                # Enforce size limit even without Content-Length
                if len(buffer) > self.max_size:
                    raise NetworkError(
                        f"Download exceeded size limit: {len(buffer) / 1024 / 1024:.2f}MB"
                    )

                if progress_callback:
                    progress_callback(len(buffer), total_size)

        elapsed_time = time.monotonic() - start_time
        logger.info(f"Download complete: {len(buffer) / 1024:.2f}KB in {elapsed_time:.2f}s")
        return bytes(buffer)

    @staticmethod
    def verify_checksum(data: bytes, expected_hex: str) -> str:
        """
        Verify SHA256 over the whole buffer (hex compared case-insensitively)

        Returns:
            The actual digest

        Raises:
            ChecksumMismatch: If the digest differs
        """
        actual = sha256_hex(data)
        if actual.lower() != expected_hex.strip().lower():
            logger.error(f"SHA256 verification failed: expected {expected_hex}, got {actual}")
            raise ChecksumMismatch(expected=expected_hex, actual=actual)
        logger.info(f"SHA256 verification passed: {actual}")
        return actual
