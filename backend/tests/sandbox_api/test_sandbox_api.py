from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from app.core.config import reset_sandbox_settings
from app.services.sandbox_session_registry import (
    SandboxSessionRegistry,
    get_sandbox_session_registry,
    reset_sandbox_session_registry,
)
from tests.sandbox_helpers import FakeSandboxProvider, make_settings


@pytest.fixture
def fake_provider():
    provider = FakeSandboxProvider()
    reset_sandbox_session_registry(SandboxSessionRegistry(settings=make_settings(), provider=provider))
    return provider


def _sse_events(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_create_returns_success_envelope(client, fake_provider):
    response = await client.post("/api/sandbox")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["isDemo"] is False
    assert body["message"] == "Sandbox created and Vite React app initialized"
    assert body["data"]["sandboxId"] == "sbx-1"
    assert body["data"]["url"] == "https://5173-sbx-1.sandbox.local"
    assert body["data"]["devPort"] == 5173
    assert "src/App.jsx" in body["data"]["trackedFiles"]
    assert body["timestamp"]


@pytest.mark.asyncio
async def test_create_in_demo_mode_is_flagged(client, monkeypatch):
    monkeypatch.setenv("SANDBOX_DEMO_MODE", "true")
    reset_sandbox_settings()

    response = await client.post("/api/sandbox")

    body = response.json()
    assert response.status_code == 200
    assert body["isDemo"] is True
    assert body["data"]["isDemo"] is True
    assert body["data"]["sandboxId"].startswith("demo-")
    assert body["data"]["warning"].startswith("Live preview not available")


@pytest.mark.asyncio
async def test_status_and_kill(client, fake_provider):
    idle = await client.get("/api/sandbox")
    assert idle.json()["data"] == {"active": False, "sandbox": None}

    await client.post("/api/sandbox")
    active = await client.get("/api/sandbox")
    assert active.json()["data"]["active"] is True
    assert active.json()["data"]["sandbox"]["status"] == "live"

    killed = await client.post("/api/sandbox/kill")
    assert killed.json()["data"] == {"sandboxKilled": True}
    assert fake_provider.killed == ["sbx-1"]

    again = await client.post("/api/sandbox/kill")
    assert again.json()["data"] == {"sandboxKilled": False}
    assert again.json()["message"] == "No active sandbox to kill"


@pytest.mark.asyncio
async def test_files_without_sandbox_is_not_found(client, fake_provider):
    response = await client.get("/api/sandbox/files")

    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["errorCode"] == "SANDBOX_NOT_FOUND"
    assert body["error"]
    assert "details" not in body


@pytest.mark.asyncio
async def test_files_returns_contents_and_manifest(client, fake_provider):
    await client.post("/api/sandbox")

    response = await client.get("/api/sandbox/files")

    assert response.status_code == 200
    data = response.json()["data"]
    assert "function App()" in data["files"]["src/App.jsx"]
    assert data["fileCount"] == len(data["files"])
    assert data["manifest"]["entryPoint"] == "/home/user/app/src/main.jsx"
    assert response.json()["message"] == f"Successfully retrieved {data['fileCount']} files from sandbox"


@pytest.mark.asyncio
async def test_files_enumeration_failure_uses_error_envelope(client):
    provider = FakeSandboxProvider(enumerate_stdout="")
    reset_sandbox_session_registry(SandboxSessionRegistry(settings=make_settings(), provider=provider))
    await client.post("/api/sandbox")

    response = await client.get("/api/sandbox/files")

    assert response.status_code == 500
    assert response.json()["errorCode"] == "NO_SANDBOX_OUTPUT"


@pytest.mark.asyncio
async def test_package_install_streams_sse_events(client, fake_provider):
    await client.post("/api/sandbox")

    response = await client.post("/api/sandbox/packages", json={"packages": ["lodash"]})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    events = _sse_events(response.text)
    assert events[0]["type"] == "start"
    assert events[-1]["type"] == "complete"
    assert events[-1]["data"]["installed_packages"] == ["lodash"]
    assert [event["seq"] for event in events] == list(range(1, len(events) + 1))


@pytest.mark.asyncio
async def test_package_install_validation(client, fake_provider):
    await client.post("/api/sandbox")

    empty = await client.post("/api/sandbox/packages", json={"packages": ["", 4]})
    assert empty.status_code == 400
    assert empty.json()["errorCode"] == "NO_VALID_PACKAGES"

    missing = await client.post("/api/sandbox/packages", json={})
    assert missing.status_code == 400
    assert missing.json()["errorCode"] == "MISSING_PARAMETER"
    assert missing.json()["details"]["missingParams"] == ["packages"]

    malformed = await client.post(
        "/api/sandbox/packages",
        content="{not json",
        headers={"content-type": "application/json"},
    )
    assert malformed.status_code == 400
    assert malformed.json()["errorCode"] == "MALFORMED_JSON"


@pytest.mark.asyncio
async def test_package_install_without_sandbox_is_not_found(client, fake_provider):
    response = await client.post("/api/sandbox/packages", json={"packages": ["lodash"]})

    assert response.status_code == 404
    assert response.json()["errorCode"] == "SANDBOX_NOT_FOUND"


@pytest.mark.asyncio
async def test_command_in_demo_mode_is_simulated(client, monkeypatch):
    monkeypatch.setenv("SANDBOX_DEMO_MODE", "1")
    reset_sandbox_settings()
    await client.post("/api/sandbox")

    response = await client.post("/api/sandbox/commands", json={"command": "npm run build"})

    body = response.json()
    assert response.status_code == 200
    assert body["isDemo"] is True
    assert body["message"] == "Command simulated in demo mode"
    assert 'Demo mode: Command "npm run build" simulated successfully' in body["data"]["output"]


@pytest.mark.asyncio
async def test_command_runs_in_project_directory(client, fake_provider):
    await client.post("/api/sandbox")

    response = await client.post("/api/sandbox/commands", json={"command": "ls -la src"})

    assert response.status_code == 200
    assert response.json()["message"] == "Command executed"
    assert fake_provider.calls[-1] == ("ls -la", ["ls", "-la", "src"])


@pytest.mark.asyncio
async def test_command_validation(client, fake_provider):
    await client.post("/api/sandbox")

    blank = await client.post("/api/sandbox/commands", json={"command": "   "})
    assert blank.status_code == 400
    assert blank.json()["errorCode"] == "MISSING_PARAMETER"

    unbalanced = await client.post("/api/sandbox/commands", json={"command": "echo 'oops"})
    assert unbalanced.status_code == 400
    assert unbalanced.json()["errorCode"] == "INVALID_INPUT"


@pytest.mark.asyncio
async def test_status_reports_last_manifest_and_expiry(client, fake_provider):
    await client.post("/api/sandbox")
    assert (await client.get("/api/sandbox")).json()["data"]["manifest"] is None

    await client.get("/api/sandbox/files")
    summary = (await client.get("/api/sandbox")).json()["data"]["manifest"]
    assert summary["entryPoint"].endswith("/src/main.jsx")
    assert summary["fileCount"] > 0

    registry = get_sandbox_session_registry()
    registry.get().expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)

    status = await client.get("/api/sandbox")
    assert status.json()["data"] == {"active": False, "sandbox": None}
    files = await client.get("/api/sandbox/files")
    assert files.status_code == 404
    assert files.json()["errorCode"] == "SANDBOX_NOT_FOUND"
