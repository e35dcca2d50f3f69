from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from app.api.responses import success_response
from app.services.sandbox_command_runner import run_command
from app.services.sandbox_manifest import SandboxManifestBuilder
from app.services.sandbox_package_installer import (
    InstallStream,
    SandboxPackageInstaller,
    get_sandbox_package_installer,
)
from app.services.sandbox_session_registry import SandboxSessionRegistry, get_sandbox_session_registry


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sandbox", tags=["sandbox"])


class InstallPackagesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    packages: list[Any] = Field(...)
    sandbox_id: Optional[str] = Field(default=None, alias="sandboxId")


class RunCommandRequest(BaseModel):
    command: str = Field(...)


def get_manifest_builder(
    registry: SandboxSessionRegistry = Depends(get_sandbox_session_registry),
) -> SandboxManifestBuilder:
    return SandboxManifestBuilder(registry.settings, registry=registry)


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


@router.post("")
async def create_sandbox(
    registry: SandboxSessionRegistry = Depends(get_sandbox_session_registry),
) -> JSONResponse:
    session = await registry.create()
    data = session.to_payload()
    outcome = session.outcome
    if outcome is not None:
        data["devPort"] = outcome.dev_port
        data["ttlSeconds"] = outcome.ttl_seconds
        data["trackedFiles"] = list(outcome.files_tracked)
        if outcome.warnings:
            data["warnings"] = list(outcome.warnings)
    if session.is_demo:
        data["warning"] = f"Live preview not available: {session.demo_reason}"
        message = "Demo sandbox created - code generation available, live preview requires a sandbox provider"
    else:
        message = "Sandbox created and Vite React app initialized"
    return success_response(data, message, is_demo=session.is_demo)


@router.get("")
async def sandbox_status(
    registry: SandboxSessionRegistry = Depends(get_sandbox_session_registry),
) -> JSONResponse:
    session = registry.current()
    if session is None:
        return success_response({"active": False, "sandbox": None}, "No active sandbox")
    data: dict[str, Any] = {"active": True, "sandbox": session.to_payload(), "manifest": None}
    manifest = registry.latest_manifest()
    if manifest is not None:
        data["manifest"] = {
            "entryPoint": manifest.entry_point,
            "fileCount": len(manifest.files),
            "routeCount": len(manifest.routes),
            "timestamp": manifest.built_at.isoformat(),
        }
    return success_response(
        data,
        "Sandbox is active",
        is_demo=session.is_demo,
    )


@router.post("/kill")
async def kill_sandbox(
    registry: SandboxSessionRegistry = Depends(get_sandbox_session_registry),
) -> JSONResponse:
    had_session = registry.current() is not None
    killed = await registry.kill()
    if not had_session:
        message = "No active sandbox to kill"
    elif killed:
        message = "Sandbox killed successfully"
    else:
        message = "Sandbox reference cleared; remote cleanup failed"
    return success_response({"sandboxKilled": killed}, message)


@router.get("/files")
async def sandbox_files(
    registry: SandboxSessionRegistry = Depends(get_sandbox_session_registry),
    builder: SandboxManifestBuilder = Depends(get_manifest_builder),
) -> JSONResponse:
    session = registry.get()
    manifest = await builder.build(session)
    files = {record.relative_path: record.content for record in manifest.files.values()}
    data: dict[str, Any] = {
        "files": files,
        "structure": manifest.structure,
        "fileCount": len(files),
        "manifest": manifest.to_payload(),
    }
    if manifest.warnings:
        data["warnings"] = list(manifest.warnings)
    return success_response(
        data,
        f"Successfully retrieved {len(files)} files from sandbox",
        is_demo=session.is_demo,
    )


@router.post("/packages")
async def install_packages(
    payload: InstallPackagesRequest,
    installer: SandboxPackageInstaller = Depends(get_sandbox_package_installer),
) -> StreamingResponse:
    stream: InstallStream = await installer.install(payload.packages, sandbox_id=payload.sandbox_id)

    async def event_generator():
        yield ": " + (" " * 2048) + "\n\n"
        async for event in stream:
            yield _sse(event.to_payload())

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/commands")
async def run_sandbox_command(
    payload: RunCommandRequest,
    registry: SandboxSessionRegistry = Depends(get_sandbox_session_registry),
) -> JSONResponse:
    result = await run_command(payload.command, registry=registry, settings=registry.settings)
    message = "Command simulated in demo mode" if result.is_demo else "Command executed"
    return success_response(result.to_payload(), message, is_demo=result.is_demo)
