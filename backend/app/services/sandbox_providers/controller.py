from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from app.services.sandbox_errors import (
    ProvisionError,
    ReconnectError,
    SandboxError,
    SandboxExecError,
    SandboxTimeoutError,
)

from .base import ExecResult, ProviderType, SandboxHandle, SandboxProvider


@dataclass(frozen=True)
class ControllerSandboxProviderConfig:
    controller_url: Optional[str]
    api_key: Optional[str]
    request_timeout_seconds: float
    default_app_dir: str
    dev_port: int


class ControllerSandboxProviderError(SandboxError):
    code = "SANDBOX_CONTROLLER_ERROR"
    status_code = 502


class ControllerSandboxProvider(SandboxProvider):
    """Talks to a remote sandbox controller over its JSON API."""

    requires_credential = True

    def __init__(self, config: ControllerSandboxProviderConfig):
        self._config = config

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.CONTROLLER

    async def create(self, *, ttl_seconds: int) -> SandboxHandle:
        try:
            payload = await self._request(
                "POST",
                "/sandboxes",
                json={"timeout_ms": int(ttl_seconds) * 1000, "expose_ports": [self._config.dev_port]},
            )
        except ControllerSandboxProviderError as exc:
            raise ProvisionError(str(exc), details={"reason": str(exc)}) from exc
        return self._handle_from_payload(payload)

    async def connect(self, sandbox_id: str) -> SandboxHandle:
        try:
            payload = await self._request("GET", f"/sandboxes/{sandbox_id}")
        except ControllerSandboxProviderError as exc:
            raise ReconnectError(
                f"Failed to reconnect to sandbox {sandbox_id}: {exc}",
                details={"sandbox_id": sandbox_id, "reason": str(exc)},
            ) from exc
        return self._handle_from_payload(payload, fallback_id=sandbox_id)

    async def kill(self, handle: SandboxHandle) -> None:
        await self._request("DELETE", f"/sandboxes/{handle.sandbox_id}")

    async def exec(
        self,
        handle: SandboxHandle,
        command: Sequence[str],
        *,
        timeout: float,
        cwd: str | None = None,
    ) -> ExecResult:
        body: Dict[str, Any] = {
            "command": list(command),
            "cwd": cwd or handle.app_dir,
            "timeout_seconds": float(timeout),
        }
        try:
            payload = await self._request(
                "POST",
                f"/sandboxes/{handle.sandbox_id}/exec",
                json=body,
                # Leave headroom so the controller reports its own timeout first.
                timeout_seconds=float(timeout) + 10.0,
            )
        except SandboxTimeoutError:
            raise
        except ControllerSandboxProviderError as exc:
            raise SandboxExecError(str(exc), details={"command": list(command)}) from exc
        if payload.get("timed_out"):
            raise SandboxTimeoutError(
                f"Command timed out after {timeout}s: {' '.join(command[:3])}",
                details={"timeout_seconds": timeout},
            )
        exit_code = payload.get("exit_code")
        return ExecResult(
            stdout=str(payload.get("stdout") or ""),
            stderr=str(payload.get("stderr") or ""),
            exit_code=int(exit_code) if exit_code is not None else None,
        )

    def preview_url(self, handle: SandboxHandle) -> str:
        return f"https://{handle.host}"

    def _handle_from_payload(self, payload: Dict[str, Any], fallback_id: str | None = None) -> SandboxHandle:
        sandbox_id = str(payload.get("sandbox_id") or fallback_id or "").strip()
        if not sandbox_id:
            raise ControllerSandboxProviderError("Sandbox controller returned no sandbox id")
        host = str(payload.get("host") or "").strip() or f"{self._config.dev_port}-{sandbox_id}.sandbox.local"
        return SandboxHandle(
            sandbox_id=sandbox_id,
            host=host,
            app_dir=str(payload.get("app_dir") or self._config.default_app_dir),
            provider_type=ProviderType.CONTROLLER,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Dict[str, Any] | None = None,
        timeout_seconds: float | None = None,
    ) -> Dict[str, Any]:
        if not self._config.controller_url:
            raise ControllerSandboxProviderError("Sandbox controller URL is not configured")
        url = f"{self._config.controller_url.rstrip('/')}{path}"
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"

        effective_timeout = float(timeout_seconds or self._config.request_timeout_seconds)
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(effective_timeout)) as client:
                response = await client.request(method, url, headers=headers, json=json)
        except httpx.TimeoutException as exc:
            raise SandboxTimeoutError(
                f"Sandbox controller request timed out after {effective_timeout}s",
                details={"path": path},
            ) from exc
        except Exception as exc:
            detail = str(exc).strip() or exc.__class__.__name__
            raise ControllerSandboxProviderError(f"Sandbox controller request failed: {detail}") from exc

        if response.status_code in {408, 504}:
            raise SandboxTimeoutError(
                f"Sandbox controller reported a timeout ({response.status_code})",
                details={"path": path},
            )
        if response.status_code >= 400:
            body = response.text.strip()
            raise ControllerSandboxProviderError(
                f"Sandbox controller request failed ({response.status_code}): {body or response.reason_phrase}"
            )
        if not response.content:
            return {}
        try:
            payload = response.json()
        except Exception as exc:
            raise ControllerSandboxProviderError("Sandbox controller returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise ControllerSandboxProviderError("Sandbox controller returned invalid payload")
        return payload
