"""
Centralized Configuration Management for RuntimeHub

Provides pydantic-based configuration with:
- Environment variable loading (.env support)
- Type validation
- Default values

Usage:
    from runtimehub.core.config import get_settings

    settings = get_settings()
    print(settings.install_root_for("voiceTranscribe"))
"""

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from runtimehub import __version__
from runtimehub.core.storage.paths import (
    default_app_support_root,
    product_root,
    runtime_install_root,
)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class RuntimeHubSettings(BaseSettings):
    """
    Central configuration for RuntimeHub

    All settings can be overridden via environment variables with RUNTIMEHUB_ prefix.
    For example: RUNTIMEHUB_APP_SUPPORT_ROOT, RUNTIMEHUB_COMMAND_TIMEOUT, etc.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="RUNTIMEHUB_",
        case_sensitive=False,
        extra="ignore",
    )

    # ============================================
    # Application Configuration
    # ============================================

    product_name: str = Field(
        default="RuntimeHub",
        description="Product directory name under the application support root"
    )

    app_version: str = Field(
        default=__version__,
        description="Running application version, compared against manifest minAppVersion"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL"
    )

    # ============================================
    # Storage Configuration
    # ============================================

    app_support_root: Path = Field(
        default_factory=default_app_support_root,
        description="Per-user application support directory"
    )

    preferences_file: Optional[Path] = Field(
        default=None,
        description="Preference store JSON file (default: <product root>/preferences.json)"
    )

    runtimes_file: Optional[Path] = Field(
        default=None,
        description="Runtime descriptor YAML file (default: <product root>/runtimes.yaml)"
    )

    # ============================================
    # Network Configuration
    # ============================================

    manifest_timeout: float = Field(
        default=30.0,
        description="Manifest request timeout in seconds"
    )

    download_timeout: float = Field(
        default=300.0,
        description="Artifact download timeout in seconds"
    )

    max_artifact_size: int = Field(
        default=1024 * 1024 * 1024,  # 1GB
        description="Maximum artifact download size in bytes"
    )

    download_retries: int = Field(
        default=3,
        ge=0,
        description="Retries after a connection error or HTTP 429/5xx during artifact download"
    )

    # ============================================
    # Verification Configuration
    # ============================================

    codesign_path: str = Field(
        default="/usr/bin/codesign",
        description="Code-signing inspection tool used to read the publisher team identifier"
    )

    # ============================================
    # Command Bridge Configuration
    # ============================================

    rpc_argument: str = Field(
        default="--json-rpc",
        description="Argument that switches a runtime into single-request RPC mode"
    )

    command_timeout: float = Field(
        default=120.0,
        description="Default runtime command timeout in seconds"
    )

    max_output_bytes: int = Field(
        default=2 * 1024 * 1024,  # 2MB
        description="Per-stream output buffer limit; older bytes are dropped beyond it"
    )

    kill_on_timeout: bool = Field(
        default=False,
        description="Kill the runtime process when a command times out instead of leaving it running"
    )

    # ============================================
    # Validators
    # ============================================

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level"""
        if v.upper() not in LOG_LEVELS:
            raise ValueError(
                f"log_level must be one of: {', '.join(LOG_LEVELS)}"
            )
        return v.upper()

    @field_validator("manifest_timeout", "download_timeout", "command_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("max_artifact_size", "max_output_bytes")
    @classmethod
    def validate_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("size limits must be positive")
        return v

    # ============================================
    # Derived paths
    # ============================================

    @property
    def product_dir(self) -> Path:
        return product_root(self.app_support_root, self.product_name)

    @property
    def preferences_path(self) -> Path:
        return self.preferences_file or self.product_dir / "preferences.json"

    @property
    def runtimes_path(self) -> Path:
        return self.runtimes_file or self.product_dir / "runtimes.yaml"

    def install_root_for(self, extension_id: str) -> Path:
        """Versioned install root for one extension"""
        return runtime_install_root(self.app_support_root, self.product_name, extension_id)


# Global settings instance
_settings: Optional[RuntimeHubSettings] = None


def get_settings(force_reload: bool = False) -> RuntimeHubSettings:
    """
    Get the global settings instance

    Args:
        force_reload: Force reload settings from environment

    Returns:
        RuntimeHubSettings instance
    """
    global _settings

    if _settings is None or force_reload:
        _settings = RuntimeHubSettings()

    return _settings
