"""Helpers shared by the runtime tests: archives, scripts and a fake update host"""

import asyncio
import hashlib
import io
import stat
import sys
import tarfile
from pathlib import Path
from typing import Dict, List, Optional

import httpx

EXTENSION_ID = "voiceTranscribe"
EXECUTABLE_NAME = "voice-runtime"
TEAM_ID = "TEAM123456"
MANIFEST_URL = "https://updates.example.com/voice/manifest.json"

# Minimal runtime: answers one JSON request on stdin, echoing action and arguments
RUNTIME_SCRIPT = """
import json, sys
request = json.loads(sys.stdin.read())
print(json.dumps({"ok": True, "payload": {"action": request["action"], "arguments": request["arguments"]}}))
"""


def write_script(path: Path, body: str) -> Path:
    """Write an executable Python script using the current interpreter"""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!{sys.executable}\n{body.lstrip()}", encoding="utf-8")
    path.chmod(0o755)
    return path


def runtime_source(body: str = RUNTIME_SCRIPT) -> bytes:
    return f"#!{sys.executable}\n{body.lstrip()}".encode("utf-8")


def make_archive(
    files: Dict[str, bytes],
    symlinks: Optional[Dict[str, str]] = None,
    hardlinks: Optional[Dict[str, str]] = None
) -> bytes:
    """Build a gzip tar archive in memory; file entries are written without execute bits"""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
        for name, target in (symlinks or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            tar.addfile(info)
        for name, target in (hardlinks or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.LNKTYPE
            info.linkname = target
            tar.addfile(info)
    return buffer.getvalue()


def sha256_of(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def manifest_dict(
    archive: bytes,
    version: str = "1.2.0",
    arch: str = "arm64",
    protocol_version: int = 1,
    min_app_version: Optional[str] = None,
    extension_id: str = EXTENSION_ID,
    executable_name: str = EXECUTABLE_NAME
) -> dict:
    manifest = {
        "id": extension_id,
        "version": version,
        "protocolVersion": protocol_version,
        "executableName": executable_name,
        "artifacts": [
            {
                "arch": arch,
                "url": f"https://cdn.example.com/voice/{version}/runtime.tar.gz",
                "sha256": sha256_of(archive),
                "sizeBytes": len(archive),
                "teamID": TEAM_ID,
            }
        ],
    }
    if min_app_version is not None:
        manifest["minAppVersion"] = min_app_version
    return manifest


def is_executable(path: Path) -> bool:
    mode = path.stat().st_mode
    return bool(mode & stat.S_IXUSR and mode & stat.S_IXGRP and mode & stat.S_IXOTH)


class RuntimeServer:
    """In-memory manifest and artifact host for httpx.MockTransport"""

    def __init__(self, manifest: dict, archive: bytes):
        self.manifest = manifest
        self.archives: Dict[str, bytes] = {}
        self.offline = False
        self.manifest_status = 200
        self.download_gate: Optional[asyncio.Event] = None
        # Holds only the next manifest request
        self.manifest_gate: Optional[asyncio.Event] = None
        # Statuses answered to the next artifact requests, in order
        self.artifact_failures: List[int] = []
        self.requests: List[httpx.Request] = []
        self.publish(manifest, archive)

    def publish(self, manifest: dict, archive: bytes) -> None:
        self.manifest = manifest
        for artifact in manifest["artifacts"]:
            self.archives[artifact["url"]] = archive

    @staticmethod
    def _is_manifest(request: httpx.Request) -> bool:
        return request.url.path.endswith("manifest.json")

    @property
    def manifest_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if self._is_manifest(r)]

    @property
    def artifact_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if not self._is_manifest(r)]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.offline:
            raise httpx.ConnectError("network is unreachable", request=request)

        if self._is_manifest(request):
            gate, self.manifest_gate = self.manifest_gate, None
            if gate is not None:
                await gate.wait()
            if self.manifest_status != 200:
                return httpx.Response(self.manifest_status)
            return httpx.Response(200, json=self.manifest)

        if self.artifact_failures:
            return httpx.Response(self.artifact_failures.pop(0))

        if self.download_gate is not None:
            await self.download_gate.wait()

        url = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        data = self.archives.get(url)
        if data is None:
            return httpx.Response(404)
        return httpx.Response(200, content=data)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
