"""Data models for the runtime system"""

import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VERSION_RE = re.compile(r"^\d+(\.\d+)*$")
_SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")


class RuntimeDescriptor(BaseModel):
    """Identifies one installable runtime and where its manifest lives"""
    id: str = Field(description="Extension identifier (e.g., 'voiceTranscribe')")
    manifest_url: str = Field(description="Manifest URL without cache-busting parameters")
    protocol_version: int = Field(default=1, description="The one manifest protocol version this build understands")
    name: Optional[str] = Field(default=None, description="Human-readable name")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate extension ID format"""
        if not v or not v.strip():
            raise ValueError("Extension ID cannot be empty")
        if not all(c.isalnum() or c in "._-" for c in v):
            raise ValueError("Extension ID can only contain alphanumeric characters, dots, underscores, and hyphens")
        if v.startswith("."):
            raise ValueError("Extension ID cannot start with a dot")
        return v

    @field_validator("manifest_url")
    @classmethod
    def validate_manifest_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("Manifest URL must use http or https")
        return v

    @property
    def display_name(self) -> str:
        return self.name or self.id


class RuntimeArtifact(BaseModel):
    """One architecture-specific runtime archive"""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    arch: str
    url: str
    sha256: str
    size_bytes: int = Field(alias="sizeBytes", ge=0)
    team_id: str = Field(alias="teamID", description="Expected code-signing team identifier")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("Artifact URL must use http or https")
        return v

    @field_validator("sha256")
    @classmethod
    def validate_sha256(cls, v: str) -> str:
        if not _SHA256_RE.match(v):
            raise ValueError("sha256 must be 64 hexadecimal characters")
        return v


class RuntimeManifest(BaseModel):
    """Remote runtime manifest (camelCase on the wire)"""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    version: str
    protocol_version: int = Field(alias="protocolVersion")
    min_app_version: Optional[str] = Field(default=None, alias="minAppVersion")
    executable_name: str = Field(alias="executableName")
    artifacts: List[RuntimeArtifact]

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Versions are dotted numeric strings"""
        if not _VERSION_RE.match(v):
            raise ValueError("Version must be a dotted numeric string (e.g., '1.10.0')")
        return v


class InstallRecord(BaseModel):
    """Persisted install facts for one extension"""
    installed_version: str
    executable_path: str


class InstallStatus(str, Enum):
    """Runtime install status"""
    CHECKING = "CHECKING"
    NOT_INSTALLED = "NOT_INSTALLED"
    INSTALLING = "INSTALLING"
    INSTALLED = "INSTALLED"
    UPDATE_AVAILABLE = "UPDATE_AVAILABLE"
    FAILED = "FAILED"


class InstallState(BaseModel):
    """In-memory install state, always derived and never persisted"""
    model_config = ConfigDict(frozen=True)

    status: InstallStatus
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    version: Optional[str] = None
    current_version: Optional[str] = None
    latest_version: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def checking(cls) -> "InstallState":
        return cls(status=InstallStatus.CHECKING)

    @classmethod
    def not_installed(cls) -> "InstallState":
        return cls(status=InstallStatus.NOT_INSTALLED)

    @classmethod
    def installing(cls, progress: float) -> "InstallState":
        return cls(status=InstallStatus.INSTALLING, progress=progress)

    @classmethod
    def installed(cls, version: str) -> "InstallState":
        return cls(status=InstallStatus.INSTALLED, version=version)

    @classmethod
    def update_available(cls, current: str, latest: str) -> "InstallState":
        return cls(status=InstallStatus.UPDATE_AVAILABLE, current_version=current, latest_version=latest)

    @classmethod
    def failed(cls, message: str) -> "InstallState":
        return cls(status=InstallStatus.FAILED, message=message)

    def describe(self) -> str:
        """Short status text for display"""
        if self.status == InstallStatus.INSTALLING:
            return f"Installing ({self.progress * 100:.0f}%)"
        if self.status == InstallStatus.INSTALLED:
            return f"Installed ({self.version})"
        if self.status == InstallStatus.UPDATE_AVAILABLE:
            return f"Update available ({self.current_version} -> {self.latest_version})"
        if self.status == InstallStatus.FAILED:
            return f"Failed: {self.message}"
        if self.status == InstallStatus.CHECKING:
            return "Checking"
        return "Not installed"


class IPCRequest(BaseModel):
    """Single request written to a runtime's stdin"""
    action: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
