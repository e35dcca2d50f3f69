from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, Optional

from app.core.config import SandboxSettings, get_sandbox_settings
from app.services.sandbox_errors import (
    InstallError,
    InvalidRequestError,
    SandboxError,
    SandboxNotFoundError,
    SandboxTimeoutError,
)
from app.services.sandbox_project_template import (
    ERESOLVE_MARKER,
    INSTALL_PACKAGES_SCRIPT,
    INSTALL_STATUS_MARKER,
    READ_DEPENDENCIES_SCRIPT,
    START_DEV_SERVER_SCRIPT,
    STDERR_MARKER,
    STOP_DEV_SERVER_SCRIPT,
    dev_pid_path,
)
from app.services.sandbox_providers import python_command
from app.services.sandbox_session import SandboxSession
from app.services.sandbox_session_registry import SandboxSessionRegistry, get_sandbox_session_registry


logger = logging.getLogger(__name__)

INSTALL_EVENT_TYPES = ("start", "status", "info", "output", "warning", "error", "success", "complete")
RESTART_TOUCH_PATHS = ("package.json", "vite.config.js")
RESTART_SETTLE_SECONDS = 3


@dataclass(frozen=True)
class InstallEvent:
    seq: int
    type: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "type": self.type,
            "message": self.message,
            "data": dict(self.data),
            "timestamp": self.timestamp.isoformat(),
        }


class InstallStream:
    """Single-writer, single-reader queue of install events.

    The writer (the install task) must call ``close`` exactly once; readers stop
    iterating when they reach the end-of-stream sentinel.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[InstallEvent]] = asyncio.Queue()
        self._events: list[InstallEvent] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def events(self) -> tuple[InstallEvent, ...]:
        return tuple(self._events)

    async def emit(self, event_type: str, message: str, **data: Any) -> Optional[InstallEvent]:
        if event_type not in INSTALL_EVENT_TYPES:
            raise ValueError(f"Unknown install event type: {event_type}")
        if self._closed:
            logger.warning("Dropping %s event on a closed install stream: %s", event_type, message)
            return None
        event = InstallEvent(seq=len(self._events) + 1, type=event_type, message=message, data=data)
        self._events.append(event)
        await self._queue.put(event)
        return event

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(None)

    async def __aiter__(self) -> AsyncIterator[InstallEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                break
            yield event


def normalize_packages(packages: Iterable[Any] | None) -> tuple[str, ...]:
    cleaned: list[str] = []
    for item in packages or ():
        if not isinstance(item, str):
            continue
        name = item.strip()
        if name and name not in cleaned:
            cleaned.append(name)
    if not cleaned:
        raise InvalidRequestError(
            "No valid package names provided",
            code="NO_VALID_PACKAGES",
            details={"originalPackages": list(packages) if isinstance(packages, (list, tuple)) else packages},
        )
    return tuple(cleaned)


def package_name(spec: str) -> str:
    """``react@18`` -> ``react``; ``@scope/pkg@1`` -> ``@scope/pkg``."""
    if spec.startswith("@"):
        head, sep, _ = spec[1:].partition("@")
        return "@" + head if sep else spec
    return spec.split("@", 1)[0]


class SandboxPackageInstaller:
    def __init__(
        self,
        *,
        registry: SandboxSessionRegistry | None = None,
        settings: SandboxSettings | None = None,
    ):
        self._registry = registry
        self._settings = settings
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def registry(self) -> SandboxSessionRegistry:
        return self._registry or get_sandbox_session_registry()

    @property
    def settings(self) -> SandboxSettings:
        return self._settings or get_sandbox_settings()

    async def install(self, packages: Iterable[Any] | None, sandbox_id: str | None = None) -> InstallStream:
        requested = normalize_packages(packages)
        registry = self.registry
        session = registry.current()
        if session is None and sandbox_id:
            session = await registry.reconnect(sandbox_id)
        if session is None:
            raise SandboxNotFoundError(
                "No active sandbox. Please create a sandbox first.",
                details={"sandbox_id": sandbox_id} if sandbox_id else None,
            )

        logger.info("Installing packages %s in sandbox %s", list(requested), session.sandbox_id)
        stream = InstallStream()
        task = asyncio.create_task(self._run(session, requested, stream))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return stream

    async def _run(self, session: SandboxSession, requested: tuple[str, ...], stream: InstallStream) -> None:
        try:
            if session.is_demo:
                await self._run_demo(requested, stream)
            else:
                await self._run_live(session, requested, stream)
        except Exception as exc:
            logger.exception("Package installation crashed in sandbox %s", session.sandbox_id)
            await stream.emit(
                "error",
                f"Package installation failed: {exc}",
                error_code="PACKAGE_INSTALL_ERROR",
                packages=list(requested),
            )
        finally:
            await stream.close()

    async def _run_demo(self, requested: tuple[str, ...], stream: InstallStream) -> None:
        packages = list(requested)
        await stream.emit("start", _start_message(packages), packages=packages)
        await stream.emit("warning", "Demo mode: package installation is simulated, nothing was installed")
        await stream.emit(
            "success",
            f"Simulated install of: {', '.join(packages)}",
            installed_packages=packages,
            simulated=True,
        )
        await stream.emit(
            "complete",
            "Demo package installation complete",
            installed_packages=packages,
            simulated=True,
        )

    async def _run_live(self, session: SandboxSession, requested: tuple[str, ...], stream: InstallStream) -> None:
        settings = self.settings
        present = await self._read_dependencies(session)
        if present is None:
            already: list[str] = []
            to_install = list(requested)
        else:
            already = [spec for spec in requested if package_name(spec) in present]
            to_install = [spec for spec in requested if package_name(spec) not in present]

        if not to_install:
            await stream.emit(
                "success",
                "All packages are already installed",
                installed_packages=[],
                already_installed=already,
            )
            await stream.emit("complete", "No new packages to install", installed_packages=[])
            return

        await stream.emit("start", _start_message(list(requested)), packages=list(requested))
        await stream.emit("status", "Stopping development server...")
        await self._stop_dev_server(session)
        await stream.emit(
            "status",
            "Checking installed packages...",
            already_installed=already,
            to_install=to_install,
        )
        await stream.emit(
            "info",
            f"Installing {len(to_install)} new package(s): {', '.join(to_install)}",
            packages=to_install,
        )

        timeout = settings.package_install_timeout_seconds
        timeout_error = SandboxTimeoutError(f"npm install timed out after {timeout:g} seconds", code="TIMEOUT")
        try:
            result = await session.provider.exec(
                session.handle,
                python_command(INSTALL_PACKAGES_SCRIPT, session.app_dir, f"{timeout:g}", *to_install),
                # The script enforces the hard deadline; this only bounds the transport.
                timeout=timeout + 15,
            )
        except SandboxTimeoutError:
            await self._fail(session, stream, timeout_error, to_install)
            return
        except Exception as exc:
            await self._fail(session, stream, InstallError(f"npm install failed: {exc}"), to_install)
            return

        status = await self._forward_output(result.stdout, stream)
        if status is not None and status.startswith("TIMEOUT"):
            message = status.partition(":")[2]
            if message:
                timeout_error = SandboxTimeoutError(message, code="TIMEOUT")
            await self._fail(session, stream, timeout_error, to_install)
            return
        if status is None and not result.ok:
            detail = result.stderr.strip().splitlines()[-1] if result.stderr.strip() else f"exit code {result.exit_code}"
            await self._fail(session, stream, InstallError(f"npm install failed: {detail}"), to_install)
            return
        if status is not None and status.startswith("ERROR"):
            exit_code = status.partition(":")[2] or "unknown"
            await stream.emit(
                "warning",
                f"npm install exited with code {exit_code}; verifying which packages were installed",
                exit_code=int(exit_code) if exit_code.lstrip("-").isdigit() else exit_code,
            )

        after = await self._read_dependencies(session) or set()
        installed = [spec for spec in to_install if package_name(spec) in after]
        missing = [spec for spec in to_install if package_name(spec) not in after]
        if installed and not missing:
            await stream.emit("success", f"Successfully installed: {', '.join(installed)}", installed_packages=installed)
        elif installed:
            await stream.emit(
                "success",
                f"Installed {', '.join(installed)}; could not verify {', '.join(missing)}",
                installed_packages=installed,
                missing_packages=missing,
            )
        else:
            await stream.emit(
                "error",
                "Failed to verify package installation",
                error_code=InstallError.code,
                missing_packages=missing,
            )

        await stream.emit("status", "Restarting development server...")
        if not await self._restart_dev_server(session):
            await stream.emit("warning", "Development server restart had issues; the preview may need a refresh")
        await stream.emit(
            "complete",
            "Package installation complete and dev server restarted!",
            installed_packages=installed,
        )

    async def _fail(
        self,
        session: SandboxSession,
        stream: InstallStream,
        error: SandboxError,
        packages: list[str],
    ) -> None:
        logger.warning("Package install failed in sandbox %s: %s (%s)", session.sandbox_id, error.message, error.code)
        await stream.emit("error", error.message, error_code=error.code, packages=packages)
        await self._restart_dev_server(session)

    async def _forward_output(self, stdout: str, stream: InstallStream) -> Optional[str]:
        status: Optional[str] = None
        for raw_line in stdout.splitlines():
            line = raw_line.strip()
            if not line:
                continue
            if line.startswith(INSTALL_STATUS_MARKER):
                status = line[len(INSTALL_STATUS_MARKER) :]
                continue
            if STDERR_MARKER in line:
                message = line.split(STDERR_MARKER, 1)[1].strip()
                if message:
                    await stream.emit("error", message, stream="stderr")
            elif ERESOLVE_MARKER in line:
                message = line.split(ERESOLVE_MARKER, 1)[1].strip()
                await stream.emit("warning", f"Dependency conflict resolved with --legacy-peer-deps: {message}")
            elif "npm WARN" in line:
                await stream.emit("warning", line)
            else:
                await stream.emit("output", line)
        return status

    async def _read_dependencies(self, session: SandboxSession) -> Optional[set[str]]:
        try:
            result = await session.provider.exec(
                session.handle,
                python_command(READ_DEPENDENCIES_SCRIPT, session.app_dir),
                timeout=self.settings.command_timeout_seconds,
            )
            payload = json.loads(result.stdout.strip().splitlines()[-1])
        except Exception as exc:
            logger.warning("Could not read package.json in sandbox %s: %s", session.sandbox_id, exc)
            return None
        if not isinstance(payload, dict) or not payload.get("success"):
            logger.warning(
                "Could not read package.json in sandbox %s: %s",
                session.sandbox_id,
                payload.get("error") if isinstance(payload, dict) else payload,
            )
            return None
        return {str(name) for name in payload.get("dependencies") or []}

    async def _stop_dev_server(self, session: SandboxSession) -> None:
        try:
            await session.provider.exec(
                session.handle,
                python_command(STOP_DEV_SERVER_SCRIPT, dev_pid_path(session.app_dir)),
                timeout=self.settings.setup_timeout_seconds,
            )
        except Exception as exc:
            logger.warning("Failed to stop dev server in sandbox %s: %s", session.sandbox_id, exc)

    async def _restart_dev_server(self, session: SandboxSession) -> bool:
        try:
            result = await session.provider.exec(
                session.handle,
                python_command(
                    START_DEV_SERVER_SCRIPT,
                    session.app_dir,
                    dev_pid_path(session.app_dir),
                    str(RESTART_SETTLE_SECONDS),
                    *RESTART_TOUCH_PATHS,
                ),
                timeout=self.settings.setup_timeout_seconds,
            )
        except Exception as exc:
            logger.warning("Failed to restart dev server in sandbox %s: %s", session.sandbox_id, exc)
            return False
        if not result.ok:
            logger.warning("Dev server restart exited with %s in sandbox %s", result.exit_code, session.sandbox_id)
        return result.ok


def _start_message(packages: list[str]) -> str:
    return f"Installing {len(packages)} package{'s' if len(packages) != 1 else ''}..."


_INSTALLER: Optional[SandboxPackageInstaller] = None


def get_sandbox_package_installer() -> SandboxPackageInstaller:
    global _INSTALLER
    if _INSTALLER is None:
        _INSTALLER = SandboxPackageInstaller()
    return _INSTALLER


def reset_sandbox_package_installer(installer: SandboxPackageInstaller | None = None) -> None:
    global _INSTALLER
    _INSTALLER = installer
