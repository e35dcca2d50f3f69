from __future__ import annotations

import threading

import pytest

from app.core.config import SandboxSettings, get_sandbox_settings, reset_sandbox_settings
from app.core.credentials import require_sandbox_api_key, validate_sandbox_api_key
from app.services.sandbox_command_runner import CommandResult, run_command
from app.services.sandbox_errors import (
    ConfigurationError,
    InstallError,
    InvalidRequestError,
    SandboxError,
    SandboxNotFoundError,
    SandboxTimeoutError,
)
from app.services.sandbox_file_tracker import FileStateTracker, normalize_tracked_path
from app.services.sandbox_providers import DemoSandboxProvider, ProviderType
from app.services.sandbox_session_registry import SandboxSessionRegistry
from tests.sandbox_helpers import FakeSandboxProvider, make_settings


def test_settings_defaults(monkeypatch):
    for name in ("SANDBOX_PROVIDER", "SANDBOX_API_KEY", "SANDBOX_DEMO_MODE", "SANDBOX_TTL_SECONDS"):
        monkeypatch.delenv(name, raising=False)

    settings = SandboxSettings.from_env()

    assert settings.provider == "controller"
    assert settings.api_key is None
    assert settings.demo_mode is False
    assert settings.ttl_seconds == 900
    assert settings.dev_port == 5173
    assert settings.app_dir == "/home/user/app"
    assert settings.manifest_max_file_bytes == 50000


def test_settings_parse_and_clamp(monkeypatch):
    monkeypatch.setenv("SANDBOX_PROVIDER", "LOCAL")
    monkeypatch.setenv("SANDBOX_DEMO_MODE", "yes")
    monkeypatch.setenv("SANDBOX_TTL_SECONDS", "5")
    monkeypatch.setenv("SANDBOX_DEV_PORT", "not-a-port")
    monkeypatch.setenv("SANDBOX_APP_DIR", "/srv/app/")

    settings = SandboxSettings.from_env()

    assert settings.provider == "local"
    assert settings.demo_mode is True
    assert settings.ttl_seconds == 60
    assert settings.dev_port == 5173
    assert settings.app_dir == "/srv/app"


def test_unknown_provider_falls_back_to_controller(monkeypatch):
    monkeypatch.setenv("SANDBOX_PROVIDER", "docker")

    assert SandboxSettings.from_env().provider == "controller"


def test_settings_singleton_is_resettable(monkeypatch):
    first = get_sandbox_settings()
    assert get_sandbox_settings() is first

    monkeypatch.setenv("SANDBOX_TTL_SECONDS", "1200")
    reset_sandbox_settings()

    assert get_sandbox_settings().ttl_seconds == 1200


@pytest.mark.parametrize(
    ("api_key", "valid", "code"),
    [
        (None, False, "MISSING_ENV_VAR"),
        ("   ", False, "MISSING_ENV_VAR"),
        ("your_api_key_here", False, "INVALID_ENV_VAR"),
        ("abc123", False, "INVALID_ENV_VAR"),
        ("sk-live-0123456789", True, "MISSING_ENV_VAR"),
    ],
)
def test_validate_sandbox_api_key(api_key, valid, code):
    check = validate_sandbox_api_key(api_key)

    assert check.valid is valid
    if not valid:
        assert check.code == code
        assert "SANDBOX_API_KEY" in (check.error or "")


def test_require_sandbox_api_key():
    assert require_sandbox_api_key("  sk-live-0123456789 ") == "sk-live-0123456789"
    with pytest.raises(ConfigurationError) as exc_info:
        require_sandbox_api_key("your_key_here")
    assert exc_info.value.details == {"variable": "SANDBOX_API_KEY"}


def test_tracker_normalizes_paths():
    tracker = FileStateTracker(["./src/App.jsx", "/package.json", "", "src\\index.css"])

    assert tracker.snapshot() == ("package.json", "src/App.jsx", "src/index.css")
    assert "/src/App.jsx" in tracker
    assert 42 not in tracker
    assert normalize_tracked_path("././a/b.js") == "a/b.js"

    tracker.clear()
    assert len(tracker) == 0


def test_tracker_is_safe_across_threads():
    tracker = FileStateTracker()

    def _add(offset: int) -> None:
        for i in range(200):
            tracker.add(f"src/file{offset}-{i}.js")

    threads = [threading.Thread(target=_add, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(tracker) == 800


@pytest.mark.asyncio
async def test_demo_provider_simulates_commands():
    provider = DemoSandboxProvider(app_dir="/home/user/app", fallback=True)
    handle = await provider.create(ttl_seconds=60)

    result = await provider.exec(handle, ["npm", "run", "lint"], timeout=5)

    assert handle.provider_type == ProviderType.DEMO
    assert handle.sandbox_id.startswith("demo-fallback-")
    assert result.ok and result.simulated
    assert result.stdout.splitlines()[0] == 'Demo mode: Command "npm run lint" simulated successfully'
    assert provider.requires_credential is False


def test_command_result_output_merges_streams():
    assert CommandResult("ls", "a\nb", "", 0).output == "a\nb"
    assert CommandResult("ls", "", "denied", 1).output == "denied"
    assert CommandResult("ls", "a", "warn", 0).output == "a\nwarn"
    assert CommandResult("ls", "a", "", 0).to_payload()["exitCode"] == 0


@pytest.mark.asyncio
async def test_run_command_uses_current_session():
    provider = FakeSandboxProvider()
    registry = SandboxSessionRegistry(settings=make_settings(), provider=provider)
    await registry.create()

    result = await run_command('echo "hello world"', registry=registry, settings=registry.settings)

    assert result.exit_code == 0
    assert result.is_demo is False
    assert provider.calls[-1][1] == ["echo", "hello world"]


@pytest.mark.asyncio
async def test_run_command_requires_session_and_input():
    registry = SandboxSessionRegistry(settings=make_settings(), provider=FakeSandboxProvider())

    with pytest.raises(InvalidRequestError) as exc_info:
        await run_command("", registry=registry)
    assert exc_info.value.code == "MISSING_PARAMETER"

    with pytest.raises(SandboxNotFoundError):
        await run_command("ls", registry=registry)


@pytest.mark.parametrize(
    ("error_cls", "code", "status_code"),
    [
        (ConfigurationError, "MISSING_ENV_VAR", 500),
        (SandboxNotFoundError, "SANDBOX_NOT_FOUND", 404),
        (InstallError, "PACKAGE_INSTALL_FAILED", 422),
        (SandboxTimeoutError, "SANDBOX_TIMEOUT", 504),
        (InvalidRequestError, "INVALID_INPUT", 400),
    ],
)
def test_error_taxonomy_defaults(error_cls, code, status_code):
    error = error_cls("boom")

    assert isinstance(error, SandboxError)
    assert (error.code, error.status_code, error.details) == (code, status_code, {})
    overridden = error_cls("boom", code="CUSTOM", details={"a": 1})
    assert overridden.code == "CUSTOM"
    assert error_cls.code == code
