from __future__ import annotations

import sys
from pathlib import Path

import pytest

from app.services.sandbox_errors import ReconnectError, SandboxExecError, SandboxTimeoutError
from app.services.sandbox_providers import LocalSandboxProvider, ProviderType, get_sandbox_provider
from tests.sandbox_helpers import make_settings


@pytest.mark.asyncio
async def test_local_provider_creates_workspace_and_runs_commands(tmp_path: Path):
    provider = LocalSandboxProvider(root_dir=str(tmp_path), dev_port=5173)

    handle = await provider.create(ttl_seconds=60)

    assert handle.provider_type == ProviderType.LOCAL
    assert handle.sandbox_id.startswith("local-")
    assert Path(handle.app_dir).is_dir()
    assert provider.preview_url(handle) == "http://127.0.0.1:5173"

    result = await provider.exec(handle, [sys.executable, "-c", "import os; print(os.getcwd())"], timeout=10)
    assert result.ok
    assert Path(result.stdout.strip()).resolve() == Path(handle.app_dir).resolve()


@pytest.mark.asyncio
async def test_local_provider_reports_nonzero_exit(tmp_path: Path):
    provider = LocalSandboxProvider(root_dir=str(tmp_path), dev_port=5173)
    handle = await provider.create(ttl_seconds=60)

    result = await provider.exec(
        handle,
        [sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"],
        timeout=10,
    )

    assert not result.ok
    assert result.exit_code == 3
    assert result.stderr == "bad"


@pytest.mark.asyncio
async def test_local_provider_kills_command_on_timeout(tmp_path: Path):
    provider = LocalSandboxProvider(root_dir=str(tmp_path), dev_port=5173)
    handle = await provider.create(ttl_seconds=60)

    with pytest.raises(SandboxTimeoutError):
        await provider.exec(handle, [sys.executable, "-c", "import time; time.sleep(10)"], timeout=0.3)


@pytest.mark.asyncio
async def test_local_provider_missing_binary_is_exec_error(tmp_path: Path):
    provider = LocalSandboxProvider(root_dir=str(tmp_path), dev_port=5173)
    handle = await provider.create(ttl_seconds=60)

    with pytest.raises(SandboxExecError):
        await provider.exec(handle, ["definitely-not-a-real-binary-xyz"], timeout=5)


@pytest.mark.asyncio
async def test_local_provider_connect_and_kill(tmp_path: Path):
    provider = LocalSandboxProvider(root_dir=str(tmp_path), dev_port=5173)
    handle = await provider.create(ttl_seconds=60)

    reconnected = await provider.connect(handle.sandbox_id)
    assert reconnected.app_dir == handle.app_dir

    await provider.kill(handle)
    assert not Path(handle.app_dir).exists()

    with pytest.raises(ReconnectError):
        await provider.connect(handle.sandbox_id)
    with pytest.raises(ReconnectError):
        await provider.connect("../escape")


def test_provider_factory_follows_settings(tmp_path: Path):
    local = get_sandbox_provider(make_settings(provider="local", local_root_dir=str(tmp_path)))
    controller = get_sandbox_provider(make_settings(provider="controller"))

    assert isinstance(local, LocalSandboxProvider)
    assert local.requires_credential is False
    assert controller.requires_credential is True
