from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from app.services.sandbox_file_tracker import FileStateTracker
from app.services.sandbox_providers import SandboxHandle, SandboxProvider


@dataclass(frozen=True)
class ProvisionOutcome:
    is_demo: bool
    reason: Optional[str]
    files_tracked: tuple[str, ...]
    dev_port: int
    ttl_seconds: int
    warnings: tuple[str, ...] = ()


class SandboxSessionStatus(str, Enum):
    provisioning = "provisioning"
    live = "live"
    demo = "demo"
    killed = "killed"


@dataclass
class SandboxSession:
    sandbox_id: str
    status: SandboxSessionStatus
    host: str
    preview_url: str
    app_dir: str
    created_at: datetime
    expires_at: Optional[datetime]
    handle: SandboxHandle
    provider: SandboxProvider
    tracker: FileStateTracker = field(default_factory=FileStateTracker)
    demo_reason: Optional[str] = None
    outcome: Optional[ProvisionOutcome] = None

    @property
    def is_demo(self) -> bool:
        return self.status == SandboxSessionStatus.demo

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and datetime.now(timezone.utc) >= self.expires_at

    def to_payload(self) -> Dict[str, Any]:
        return {
            "sandboxId": self.sandbox_id,
            "url": self.preview_url,
            "host": self.host,
            "status": self.status.value,
            "isDemo": self.is_demo,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "filesTracked": len(self.tracker),
        }
