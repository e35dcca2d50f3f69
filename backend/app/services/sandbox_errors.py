from __future__ import annotations

from typing import Any, Optional


class SandboxError(Exception):
    """Base class for failures surfaced by the sandbox services.

    Every subclass carries a stable ``code`` and an HTTP-like ``status_code`` so
    the API layer can render a uniform error envelope without inspecting
    messages.
    """

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = dict(details or {})


class ConfigurationError(SandboxError):
    code = "MISSING_ENV_VAR"
    status_code = 500


class ProvisionError(SandboxError):
    code = "SANDBOX_CREATION_FAILED"
    status_code = 500


class SetupError(SandboxError):
    code = "SANDBOX_SETUP_FAILED"
    status_code = 500


class SandboxNotFoundError(SandboxError):
    code = "SANDBOX_NOT_FOUND"
    status_code = 404


class ReconnectError(SandboxError):
    code = "SANDBOX_RECONNECTION_FAILED"
    status_code = 503


class InstallError(SandboxError):
    code = "PACKAGE_INSTALL_FAILED"
    status_code = 422


class SandboxTimeoutError(SandboxError):
    code = "SANDBOX_TIMEOUT"
    status_code = 504


class SandboxExecError(SandboxError):
    code = "SANDBOX_EXECUTION_FAILED"
    status_code = 502


class InvalidRequestError(SandboxError):
    code = "INVALID_INPUT"
    status_code = 400


class ManifestError(SandboxError):
    code = "MANIFEST_BUILD_FAILED"
    status_code = 500


class CleanupError(SandboxError):
    # Logged by callers, never surfaced.
    code = "CLEANUP_FAILED"
    status_code = 500
