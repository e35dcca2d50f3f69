from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


_TRUTHY = {"1", "true", "yes", "on"}


def _is_truthy(value: str | None) -> bool:
    return str(value or "").strip().lower() in _TRUTHY


def _env_int(name: str, default: int, minimum: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        value = float(raw) if raw else default
    except ValueError:
        value = default
    return max(minimum, value)


@dataclass(frozen=True)
class SandboxSettings:
    provider: str
    api_key: Optional[str]
    controller_url: Optional[str]
    demo_mode: bool
    ttl_seconds: int
    create_timeout_seconds: float
    app_dir: str
    dev_port: int
    dev_startup_delay_seconds: float
    setup_timeout_seconds: float
    baseline_install_timeout_seconds: float
    package_install_timeout_seconds: float
    command_timeout_seconds: float
    manifest_max_file_bytes: int
    local_root_dir: str

    @classmethod
    def from_env(cls) -> "SandboxSettings":
        provider = (os.getenv("SANDBOX_PROVIDER") or "controller").strip().lower()
        return cls(
            provider=provider if provider in {"controller", "local"} else "controller",
            api_key=(os.getenv("SANDBOX_API_KEY") or "").strip() or None,
            controller_url=(os.getenv("SANDBOX_CONTROLLER_URL") or "").strip() or None,
            demo_mode=_is_truthy(os.getenv("SANDBOX_DEMO_MODE")),
            ttl_seconds=_env_int("SANDBOX_TTL_SECONDS", 900, 60),
            create_timeout_seconds=_env_float("SANDBOX_CREATE_TIMEOUT_SECONDS", 120.0, 5.0),
            app_dir=(os.getenv("SANDBOX_APP_DIR") or "/home/user/app").strip().rstrip("/") or "/home/user/app",
            dev_port=_env_int("SANDBOX_DEV_PORT", 5173, 1),
            dev_startup_delay_seconds=_env_float("SANDBOX_DEV_STARTUP_DELAY_SECONDS", 3.0, 0.0),
            setup_timeout_seconds=_env_float("SANDBOX_SETUP_TIMEOUT_SECONDS", 60.0, 5.0),
            baseline_install_timeout_seconds=_env_float("SANDBOX_BASELINE_INSTALL_TIMEOUT_SECONDS", 120.0, 10.0),
            package_install_timeout_seconds=_env_float("SANDBOX_PACKAGE_INSTALL_TIMEOUT_SECONDS", 60.0, 5.0),
            command_timeout_seconds=_env_float("SANDBOX_COMMAND_TIMEOUT_SECONDS", 60.0, 1.0),
            manifest_max_file_bytes=_env_int("SANDBOX_MANIFEST_MAX_FILE_BYTES", 50000, 1024),
            local_root_dir=(os.getenv("SANDBOX_LOCAL_ROOT_DIR") or "/tmp/edu-bricks-sandboxes").strip(),
        )


_SETTINGS: Optional[SandboxSettings] = None


def get_sandbox_settings() -> SandboxSettings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = SandboxSettings.from_env()
    return _SETTINGS


def reset_sandbox_settings() -> None:
    global _SETTINGS
    _SETTINGS = None
