"""RuntimeHub Runtimes System

Installs, updates and calls external native runtimes that are not bundled
with the application.

Core principles:
1. Nothing is installed unless its checksum and code signature both verify
2. A version directory appears only through one atomic rename
3. Install state is derived from disk and never persisted
4. Each runtime command runs in its own short-lived process

Components:
- manifest: Remote manifest fetching and validation
- artifacts: Architecture selection, download and SHA256 verification
- signature: Publisher team verification via the code-signing tool
- installer: Extraction, executable resolution and atomic publish
- manager: Install state machine for one runtime
- bridge: JSON request/response over a child process
- registry: Runtime descriptors loaded from YAML
- records: Persisted install records
"""

from runtimehub.core.runtimes.exceptions import (
    RuntimeHubError,
    ConfigurationError,
    NetworkError,
    ManifestInvalid,
    UnsupportedArchitecture,
    AppVersionTooOld,
    ChecksumMismatch,
    ExecutableMissing,
    PathEscape,
    SignatureInvalid,
    InstallationError,
    Cancelled,
    RuntimeNotInstalled,
    ProcessFailed,
    IPCInvalidResponse,
    IPCHelperError,
    CommandTimeout,
)
from runtimehub.core.runtimes.models import (
    RuntimeDescriptor,
    RuntimeArtifact,
    RuntimeManifest,
    InstallRecord,
    InstallState,
    InstallStatus,
)
from runtimehub.core.runtimes.versioning import compare_versions, is_newer
from runtimehub.core.runtimes.manifest import ManifestFetcher
from runtimehub.core.runtimes.artifacts import ArtifactVerifier, host_architecture
from runtimehub.core.runtimes.signature import CodesignVerifier
from runtimehub.core.runtimes.installer import RuntimeInstaller, CancellationToken
from runtimehub.core.runtimes.records import InstallRecordStore
from runtimehub.core.runtimes.bridge import CommandBridge
from runtimehub.core.runtimes.manager import RuntimeManager
from runtimehub.core.runtimes.registry import RuntimeRegistry

__all__ = [
    # Exceptions
    "RuntimeHubError",
    "ConfigurationError",
    "NetworkError",
    "ManifestInvalid",
    "UnsupportedArchitecture",
    "AppVersionTooOld",
    "ChecksumMismatch",
    "ExecutableMissing",
    "PathEscape",
    "SignatureInvalid",
    "InstallationError",
    "Cancelled",
    "RuntimeNotInstalled",
    "ProcessFailed",
    "IPCInvalidResponse",
    "IPCHelperError",
    "CommandTimeout",
    # Models
    "RuntimeDescriptor",
    "RuntimeArtifact",
    "RuntimeManifest",
    "InstallRecord",
    "InstallState",
    "InstallStatus",
    # Versioning
    "compare_versions",
    "is_newer",
    # Components
    "ManifestFetcher",
    "ArtifactVerifier",
    "host_architecture",
    "CodesignVerifier",
    "RuntimeInstaller",
    "CancellationToken",
    "InstallRecordStore",
    "CommandBridge",
    "RuntimeManager",
    "RuntimeRegistry",
]
