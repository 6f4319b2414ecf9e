"""Exception classes for the runtime install and command bridge system"""

from typing import Optional


class RuntimeHubError(Exception):
    """Base exception for all runtime-related errors"""

    error_code = "UNKNOWN"

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint


class ConfigurationError(RuntimeHubError):
    """Raised when a runtime descriptor or setting is unusable"""
    error_code = "CONFIGURATION_ERROR"


class NetworkError(RuntimeHubError):
    """Raised when a manifest or artifact request fails"""
    error_code = "NETWORK_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None, hint: Optional[str] = None):
        super().__init__(message, hint=hint or "Check network connectivity and try again")
        self.status_code = status_code


class ManifestInvalid(RuntimeHubError):
    """Raised when the runtime manifest cannot be decoded or is not acceptable"""
    error_code = "MANIFEST_INVALID"

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(f"Invalid runtime manifest: {message}", hint=hint)


class UnsupportedArchitecture(ManifestInvalid):
    """Raised when the manifest has no artifact for the host architecture"""
    error_code = "UNSUPPORTED_ARCHITECTURE"

    def __init__(self, arch: str):
        super().__init__(f"No runtime artifact available for architecture '{arch}'.")
        self.arch = arch


class AppVersionTooOld(RuntimeHubError):
    """Raised when the running application is older than the manifest requires"""
    error_code = "APP_VERSION_TOO_OLD"

    def __init__(self, required: str, current: str):
        super().__init__(
            f"This runtime requires version {required}+ (current: {current}).",
            hint="Update the application and try again",
        )
        self.required = required
        self.current = current


class ChecksumMismatch(RuntimeHubError):
    """Raised when a downloaded artifact does not match its SHA256"""
    error_code = "CHECKSUM_MISMATCH"

    def __init__(self, expected: str, actual: str):
        super().__init__(
            "Runtime checksum verification failed.",
            hint="The downloaded file may be corrupted or tampered with",
        )
        self.expected = expected
        self.actual = actual


class ExecutableMissing(RuntimeHubError):
    """Raised when the runtime executable cannot be found"""
    error_code = "EXECUTABLE_MISSING"

    def __init__(self, name: str):
        super().__init__(f"Runtime executable '{name}' was not found.")
        self.name = name


class PathEscape(RuntimeHubError):
    """Raised when an archive entry or executable resolves outside its root"""
    error_code = "PATH_ESCAPE"

    def __init__(self, message: str):
        super().__init__(message, hint="The runtime package is malformed or malicious and was rejected")


class SignatureInvalid(RuntimeHubError):
    """Raised when the executable's code signature does not match the expected publisher"""
    error_code = "SIGNATURE_INVALID"

    def __init__(self, message: str):
        super().__init__(f"Runtime signature verification failed: {message}")


class InstallationError(RuntimeHubError):
    """Raised when publishing or removing runtime files fails"""
    error_code = "INSTALLATION_FAILED"


class Cancelled(RuntimeHubError):
    """Raised at a checkpoint after cancellation was requested"""
    error_code = "CANCELLED"

    def __init__(self, message: str = "Runtime installation was cancelled."):
        super().__init__(message)


class RuntimeNotInstalled(RuntimeHubError):
    """Raised when a command is issued to a runtime that is not installed"""
    error_code = "RUNTIME_NOT_INSTALLED"

    def __init__(self, extension_id: str):
        super().__init__(
            f"Runtime '{extension_id}' is not installed.",
            hint=f"Install it first: runtimehub runtimes install {extension_id}",
        )
        self.extension_id = extension_id


class ProcessFailed(RuntimeHubError):
    """Raised when the runtime process exits with a non-zero status"""
    error_code = "PROCESS_FAILED"

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


class IPCInvalidResponse(RuntimeHubError):
    """Raised when the runtime's stdout is not a JSON object"""
    error_code = "IPC_INVALID_RESPONSE"


class IPCHelperError(RuntimeHubError):
    """Raised when the runtime answers with ok=false"""
    error_code = "IPC_HELPER_ERROR"


class CommandTimeout(RuntimeHubError):
    """Raised when a runtime command does not finish in time"""
    error_code = "TIMEOUT"

    def __init__(self, action: str, timeout: float):
        super().__init__(
            f"Runtime command '{action}' timed out after {timeout:g} seconds.",
            hint="Increase the command timeout or check the runtime's diagnostics",
        )
        self.action = action
        self.timeout = timeout
