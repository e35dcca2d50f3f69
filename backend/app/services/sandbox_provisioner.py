from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from app.core.config import SandboxSettings
from app.core.credentials import validate_sandbox_api_key
from app.services.sandbox_errors import SetupError
from app.services.sandbox_file_tracker import FileStateTracker
from app.services.sandbox_project_template import (
    SKELETON_PATHS,
    START_DEV_SERVER_SCRIPT,
    TOUCH_FILES_SCRIPT,
    WRITE_FILES_SCRIPT,
    build_project_skeleton,
    dev_pid_path,
    encode_payload,
)
from app.services.sandbox_providers import (
    DemoSandboxProvider,
    SandboxHandle,
    SandboxProvider,
    get_sandbox_provider,
    python_command,
)
from app.services.sandbox_session import ProvisionOutcome, SandboxSession, SandboxSessionStatus


logger = logging.getLogger(__name__)

STYLESHEET_PATH = "src/index.css"


class SandboxProvisioner:
    """Creates a fresh sandbox and bootstraps the starter project in it.

    Falls back to a demo session when demo mode is forced, when the provider
    needs a credential that is missing or malformed, or when creation fails or
    times out. Only a failure to write the skeleton is fatal.
    """

    def __init__(
        self,
        settings: SandboxSettings,
        *,
        provider: SandboxProvider | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._settings = settings
        self._provider = provider
        self._sleep = sleep

    @property
    def provider(self) -> SandboxProvider:
        if self._provider is None:
            self._provider = get_sandbox_provider(self._settings)
        return self._provider

    async def provision(self, tracker: FileStateTracker | None = None) -> tuple[SandboxSession, ProvisionOutcome]:
        tracker = tracker if tracker is not None else FileStateTracker()
        settings = self._settings

        if settings.demo_mode:
            return await self._demo("Demo mode enabled by configuration", tracker, fallback=False)

        provider = self.provider
        if provider.requires_credential:
            check = validate_sandbox_api_key(settings.api_key)
            if not check.valid:
                return await self._demo(check.error or "Sandbox credential is invalid", tracker, fallback=False)

        try:
            handle = await asyncio.wait_for(
                provider.create(ttl_seconds=settings.ttl_seconds),
                timeout=settings.create_timeout_seconds,
            )
        except asyncio.TimeoutError:
            reason = f"Sandbox creation timed out after {settings.create_timeout_seconds:g}s"
            return await self._demo(reason, tracker, fallback=True)
        except Exception as exc:
            reason = str(exc).strip() or exc.__class__.__name__
            return await self._demo(f"Sandbox creation failed: {reason}", tracker, fallback=True)

        logger.info("Sandbox %s created on %s", handle.sandbox_id, handle.host)
        await self._write_skeleton(provider, handle)
        warnings = await self._bootstrap(provider, handle)

        session = SandboxSession(
            sandbox_id=handle.sandbox_id,
            status=SandboxSessionStatus.live,
            host=handle.host,
            preview_url=provider.preview_url(handle),
            app_dir=handle.app_dir,
            created_at=datetime.now(timezone.utc),
            expires_at=None,
            handle=handle,
            provider=provider,
            tracker=tracker,
        )
        outcome = ProvisionOutcome(
            is_demo=False,
            reason=None,
            files_tracked=SKELETON_PATHS,
            dev_port=settings.dev_port,
            ttl_seconds=settings.ttl_seconds,
            warnings=tuple(warnings),
        )
        session.outcome = outcome
        return session, outcome

    async def _demo(
        self,
        reason: str,
        tracker: FileStateTracker,
        *,
        fallback: bool,
    ) -> tuple[SandboxSession, ProvisionOutcome]:
        logger.warning("Using demo sandbox: %s", reason)
        provider = DemoSandboxProvider(app_dir=self._settings.app_dir, fallback=fallback)
        handle = await provider.create(ttl_seconds=self._settings.ttl_seconds)
        session = SandboxSession(
            sandbox_id=handle.sandbox_id,
            status=SandboxSessionStatus.demo,
            host=handle.host,
            preview_url=provider.preview_url(handle),
            app_dir=handle.app_dir,
            created_at=datetime.now(timezone.utc),
            expires_at=None,
            handle=handle,
            provider=provider,
            tracker=tracker,
            demo_reason=reason,
        )
        outcome = ProvisionOutcome(
            is_demo=True,
            reason=reason,
            files_tracked=SKELETON_PATHS,
            dev_port=self._settings.dev_port,
            ttl_seconds=self._settings.ttl_seconds,
        )
        session.outcome = outcome
        return session, outcome

    async def _write_skeleton(self, provider: SandboxProvider, handle: SandboxHandle) -> None:
        files = dict(build_project_skeleton(dev_port=self._settings.dev_port))
        reason: Optional[str] = None
        try:
            result = await provider.exec(
                handle,
                python_command(WRITE_FILES_SCRIPT, handle.app_dir, encode_payload(files)),
                timeout=self._settings.setup_timeout_seconds,
                cwd="/",
            )
            if not result.ok:
                reason = (result.stderr or result.stdout).strip() or f"exit code {result.exit_code}"
        except Exception as exc:
            reason = str(exc).strip() or exc.__class__.__name__

        if reason is None:
            return

        logger.error("Failed to write project skeleton into sandbox %s: %s", handle.sandbox_id, reason)
        try:
            await provider.kill(handle)
        except Exception as exc:
            logger.warning("Failed to clean up sandbox %s after setup error: %s", handle.sandbox_id, exc)
        raise SetupError(
            f"Failed to set up project skeleton: {reason}",
            details={"sandbox_id": handle.sandbox_id, "reason": reason},
        )

    async def _bootstrap(self, provider: SandboxProvider, handle: SandboxHandle) -> list[str]:
        settings = self._settings
        warnings: list[str] = []

        async def _best_effort(step: str, command: list[str], timeout: float) -> None:
            try:
                result = await provider.exec(handle, command, timeout=timeout)
            except Exception as exc:
                message = f"{step}: {exc}"
            else:
                if result.ok:
                    return
                message = f"{step}: exit code {result.exit_code} {result.stderr.strip()[:500]}".rstrip()
            logger.warning("Sandbox %s bootstrap step had issues, continuing: %s", handle.sandbox_id, message)
            warnings.append(message)

        await _best_effort("npm install", ["npm", "install"], settings.baseline_install_timeout_seconds)
        await _best_effort(
            "dev server start",
            python_command(START_DEV_SERVER_SCRIPT, handle.app_dir, dev_pid_path(handle.app_dir), "0"),
            settings.setup_timeout_seconds,
        )
        await self._sleep(settings.dev_startup_delay_seconds)
        await _best_effort(
            "stylesheet rebuild",
            python_command(TOUCH_FILES_SCRIPT, handle.app_dir, STYLESHEET_PATH),
            settings.setup_timeout_seconds,
        )
        return warnings
