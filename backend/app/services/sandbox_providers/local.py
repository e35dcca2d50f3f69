from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
from collections.abc import Sequence
from pathlib import Path
from uuid import uuid4

from app.services.sandbox_errors import ProvisionError, ReconnectError, SandboxExecError, SandboxTimeoutError
from app.services.sandbox_project_template import DEV_PID_FILENAME

from .base import ExecResult, ProviderType, SandboxHandle, SandboxProvider


logger = logging.getLogger(__name__)


class LocalSandboxProvider(SandboxProvider):
    """Runs sandboxes as plain directories on this host.

    Meant for development: each sandbox is ``<root_dir>/<sandbox_id>`` and
    commands run as local subprocesses.
    """

    def __init__(self, *, root_dir: str, dev_port: int, host: str = "127.0.0.1"):
        self._root_dir = Path(root_dir).expanduser().resolve()
        self._dev_port = int(dev_port)
        self._host = host

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.LOCAL

    async def create(self, *, ttl_seconds: int) -> SandboxHandle:
        sandbox_id = f"local-{uuid4().hex[:12]}"
        project_dir = self._root_dir / sandbox_id
        try:
            project_dir.mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            raise ProvisionError(f"Failed to create local sandbox directory: {exc}") from exc
        return self._handle(sandbox_id, project_dir)

    async def connect(self, sandbox_id: str) -> SandboxHandle:
        cleaned = (sandbox_id or "").strip()
        if not cleaned or "/" in cleaned or cleaned in {".", ".."}:
            raise ReconnectError(f"Invalid sandbox id: {sandbox_id!r}", details={"sandbox_id": sandbox_id})
        project_dir = self._root_dir / cleaned
        if not project_dir.is_dir():
            raise ReconnectError(
                f"Failed to reconnect to sandbox {cleaned}: workspace not found",
                details={"sandbox_id": cleaned, "reason": "workspace not found"},
            )
        return self._handle(cleaned, project_dir)

    async def kill(self, handle: SandboxHandle) -> None:
        project_dir = Path(handle.app_dir)
        self._stop_dev_process(project_dir / DEV_PID_FILENAME)
        if project_dir.is_dir() and self._root_dir in project_dir.parents:
            await asyncio.to_thread(shutil.rmtree, project_dir, True)

    async def exec(
        self,
        handle: SandboxHandle,
        command: Sequence[str],
        *,
        timeout: float,
        cwd: str | None = None,
    ) -> ExecResult:
        if not command:
            raise SandboxExecError("Command is required")
        workdir = cwd or handle.app_dir
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=workdir,
                env=dict(os.environ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SandboxExecError(f"Failed to start `{command[0]}`: {exc}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=float(timeout))
        except asyncio.TimeoutError:
            process.kill()
            await process.communicate()
            raise SandboxTimeoutError(
                f"Command timed out after {timeout}s: {' '.join(command[:3])}",
                details={"timeout_seconds": timeout},
            )
        return ExecResult(
            stdout=(stdout or b"").decode("utf-8", errors="replace"),
            stderr=(stderr or b"").decode("utf-8", errors="replace"),
            exit_code=process.returncode,
        )

    def preview_url(self, handle: SandboxHandle) -> str:
        return f"http://{handle.host}"

    def _handle(self, sandbox_id: str, project_dir: Path) -> SandboxHandle:
        return SandboxHandle(
            sandbox_id=sandbox_id,
            host=f"{self._host}:{self._dev_port}",
            app_dir=str(project_dir),
            provider_type=ProviderType.LOCAL,
        )

    def _stop_dev_process(self, pid_file: Path) -> None:
        try:
            pid = int(pid_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return
        try:
            os.killpg(pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        except OSError as exc:
            logger.warning("Failed to stop local dev server %s: %s", pid, exc)
