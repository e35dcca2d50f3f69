from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Optional

from app.core.config import SandboxSettings, get_sandbox_settings
from app.core.credentials import require_sandbox_api_key
from app.services.sandbox_errors import CleanupError, ReconnectError, SandboxError, SandboxNotFoundError
from app.services.sandbox_file_tracker import FileStateTracker
from app.services.sandbox_providers import SandboxProvider, get_sandbox_provider
from app.services.sandbox_provisioner import SandboxProvisioner
from app.services.sandbox_session import SandboxSession, SandboxSessionStatus

if TYPE_CHECKING:
    from app.services.sandbox_manifest import SandboxManifest


logger = logging.getLogger(__name__)

ProvisionerFactory = Callable[[SandboxSettings], SandboxProvisioner]


class SandboxSessionRegistry:
    """Owns the one sandbox session this process drives.

    ``create``, ``reconnect`` and ``kill`` serialize on a lock and replace the
    session reference in a single assignment; readers never see a session that
    is still being set up.
    """

    def __init__(
        self,
        *,
        settings: SandboxSettings | None = None,
        provisioner_factory: ProvisionerFactory | None = None,
        provider: SandboxProvider | None = None,
    ):
        self._settings = settings
        self._provisioner_factory = provisioner_factory
        self._provider = provider
        self._lock = asyncio.Lock()
        self._session: Optional[SandboxSession] = None
        self._tracker = FileStateTracker()
        self._manifest: Optional["SandboxManifest"] = None

    @property
    def settings(self) -> SandboxSettings:
        return self._settings or get_sandbox_settings()

    @property
    def tracker(self) -> FileStateTracker:
        return self._tracker

    def current(self) -> Optional[SandboxSession]:
        session = self._session
        if session is None or session.is_expired:
            return None
        return session

    def get(self) -> SandboxSession:
        session = self._session
        if session is None:
            raise SandboxNotFoundError("No active sandbox. Please create a sandbox first.")
        if session.is_expired:
            raise SandboxNotFoundError(
                f"Sandbox {session.sandbox_id} expired. Please create a new sandbox.",
                details={"sandbox_id": session.sandbox_id, "expired": True},
            )
        return session

    async def create(self, settings: SandboxSettings | None = None) -> SandboxSession:
        settings = settings or self.settings
        async with self._lock:
            previous = self._session
            self._session = None
            self._reset_state()
            if previous is not None:
                await self._close(previous)

            provisioner = self._make_provisioner(settings)
            session, outcome = await provisioner.provision(self._tracker)
            for path in outcome.files_tracked:
                self._tracker.add(path)
            session.expires_at = datetime.now(timezone.utc) + timedelta(seconds=settings.ttl_seconds)
            self._session = session

        logger.info(
            "Sandbox session %s is %s (%d files tracked)",
            session.sandbox_id,
            session.status.value,
            len(self._tracker),
        )
        return session

    async def reconnect(self, sandbox_id: str) -> SandboxSession:
        settings = self.settings
        async with self._lock:
            current = self._session
            if current is not None and current.is_expired:
                self._session = None
                self._reset_state()
                await self._close(current)
                current = None
            if current is not None:
                if current.sandbox_id == sandbox_id:
                    return current
                raise ReconnectError(
                    f"Cannot reconnect to sandbox {sandbox_id}: sandbox {current.sandbox_id} is active",
                    details={"sandbox_id": sandbox_id, "active_sandbox_id": current.sandbox_id},
                )

            provider = self._provider or get_sandbox_provider(settings)
            if provider.requires_credential:
                require_sandbox_api_key(settings.api_key)

            logger.info("Reconnecting to sandbox %s", sandbox_id)
            try:
                handle = await provider.connect(sandbox_id)
            except ReconnectError:
                raise
            except Exception as exc:
                reason = exc.message if isinstance(exc, SandboxError) else (str(exc).strip() or exc.__class__.__name__)
                raise ReconnectError(
                    f"Failed to reconnect to sandbox {sandbox_id}: {reason}",
                    details={"sandbox_id": sandbox_id, "reason": reason},
                ) from exc

            now = datetime.now(timezone.utc)
            self._reset_state()
            session = SandboxSession(
                sandbox_id=handle.sandbox_id,
                status=SandboxSessionStatus.live,
                host=handle.host,
                preview_url=provider.preview_url(handle),
                app_dir=handle.app_dir,
                created_at=now,
                expires_at=now + timedelta(seconds=settings.ttl_seconds),
                handle=handle,
                provider=provider,
                tracker=self._tracker,
            )
            self._session = session
        logger.info("Reconnected to sandbox %s", session.sandbox_id)
        return session

    async def kill(self) -> bool:
        async with self._lock:
            session = self._session
            self._session = None
            self._reset_state()
            if session is None:
                return False
            return await self._close(session)

    def remember_manifest(self, session: SandboxSession, manifest: "SandboxManifest") -> bool:
        if self._session is not session:
            logger.debug("Dropping manifest for superseded sandbox %s", session.sandbox_id)
            return False
        self._manifest = manifest
        return True

    def latest_manifest(self) -> Optional["SandboxManifest"]:
        if self.current() is None:
            return None
        return self._manifest

    def _reset_state(self) -> None:
        self._tracker.clear()
        self._manifest = None

    def _make_provisioner(self, settings: SandboxSettings) -> SandboxProvisioner:
        if self._provisioner_factory is not None:
            return self._provisioner_factory(settings)
        return SandboxProvisioner(settings, provider=self._provider)

    async def _close(self, session: SandboxSession) -> bool:
        session.status = SandboxSessionStatus.killed
        try:
            await session.provider.kill(session.handle)
        except Exception as exc:
            error = CleanupError(
                f"Failed to kill sandbox {session.sandbox_id}: {exc}",
                details={"sandbox_id": session.sandbox_id},
            )
            logger.warning("%s (%s)", error.message, error.code)
            return False
        logger.info("Sandbox %s killed", session.sandbox_id)
        return True


_REGISTRY: Optional[SandboxSessionRegistry] = None


def get_sandbox_session_registry() -> SandboxSessionRegistry:
    global _REGISTRY
    if _REGISTRY is None:
        _REGISTRY = SandboxSessionRegistry()
    return _REGISTRY


def reset_sandbox_session_registry(registry: SandboxSessionRegistry | None = None) -> None:
    global _REGISTRY
    _REGISTRY = registry
