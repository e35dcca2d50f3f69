from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ProviderType(str, Enum):
    CONTROLLER = "controller"
    LOCAL = "local"
    DEMO = "demo"


@dataclass(frozen=True)
class SandboxHandle:
    sandbox_id: str
    host: str
    app_dir: str
    provider_type: ProviderType


@dataclass(frozen=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_code: Optional[int]
    simulated: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class SandboxProvider(ABC):
    """Capability surface shared by live and demo environments.

    Implementations raise ``ProvisionError`` from ``create``, ``ReconnectError``
    from ``connect``, ``SandboxTimeoutError`` when ``exec`` exceeds its timeout
    and ``SandboxExecError`` for any other transport failure.
    """

    requires_credential: bool = False

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        ...

    @abstractmethod
    async def create(self, *, ttl_seconds: int) -> SandboxHandle:
        ...

    @abstractmethod
    async def connect(self, sandbox_id: str) -> SandboxHandle:
        ...

    @abstractmethod
    async def kill(self, handle: SandboxHandle) -> None:
        ...

    @abstractmethod
    async def exec(
        self,
        handle: SandboxHandle,
        command: Sequence[str],
        *,
        timeout: float,
        cwd: str | None = None,
    ) -> ExecResult:
        ...

    def preview_url(self, handle: SandboxHandle) -> str:
        return f"https://{handle.host}"


def python_command(script: str, *args: str) -> list[str]:
    return ["python3", "-c", script, *args]
