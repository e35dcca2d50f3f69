from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from app.services.sandbox_errors import ConfigurationError


_PLACEHOLDER_MARKERS = ("your_", "_here")


@dataclass(frozen=True)
class CredentialCheck:
    valid: bool
    error: Optional[str] = None
    code: str = "MISSING_ENV_VAR"


def validate_sandbox_api_key(api_key: str | None) -> CredentialCheck:
    """Check the provider credential without calling the provider."""
    key = (api_key or "").strip()
    if not key:
        return CredentialCheck(
            valid=False,
            error="SANDBOX_API_KEY is not configured.",
        )
    if any(marker in key for marker in _PLACEHOLDER_MARKERS):
        return CredentialCheck(
            valid=False,
            error="SANDBOX_API_KEY is not properly configured. Please set a valid API key.",
            code="INVALID_ENV_VAR",
        )
    if len(key) < 10:
        return CredentialCheck(
            valid=False,
            error="SANDBOX_API_KEY appears to have an invalid format. Please check your API key.",
            code="INVALID_ENV_VAR",
        )
    return CredentialCheck(valid=True)


def require_sandbox_api_key(api_key: str | None) -> str:
    check = validate_sandbox_api_key(api_key)
    if not check.valid:
        raise ConfigurationError(
            check.error or "SANDBOX_API_KEY is invalid.",
            code=check.code,
            details={"variable": "SANDBOX_API_KEY"},
        )
    return str(api_key).strip()
