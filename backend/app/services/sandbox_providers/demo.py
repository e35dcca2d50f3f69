from __future__ import annotations

import shlex
import time
from collections.abc import Sequence

from .base import ExecResult, ProviderType, SandboxHandle, SandboxProvider


DEMO_HOST = "demo.edu-bricks.local"


def _now_ms() -> int:
    return int(time.time() * 1000)


class DemoSandboxProvider(SandboxProvider):
    """Stand-in used when no real environment can be provisioned.

    Nothing is created anywhere; ``exec`` returns simulated output so callers
    can keep a single code path.
    """

    def __init__(self, *, app_dir: str, fallback: bool = False):
        self._app_dir = app_dir
        self._fallback = fallback

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.DEMO

    async def create(self, *, ttl_seconds: int) -> SandboxHandle:
        prefix = "demo-fallback" if self._fallback else "demo"
        return SandboxHandle(
            sandbox_id=f"{prefix}-{_now_ms()}",
            host=DEMO_HOST,
            app_dir=self._app_dir,
            provider_type=ProviderType.DEMO,
        )

    async def connect(self, sandbox_id: str) -> SandboxHandle:
        return SandboxHandle(
            sandbox_id=sandbox_id,
            host=DEMO_HOST,
            app_dir=self._app_dir,
            provider_type=ProviderType.DEMO,
        )

    async def kill(self, handle: SandboxHandle) -> None:
        return None

    async def exec(
        self,
        handle: SandboxHandle,
        command: Sequence[str],
        *,
        timeout: float,
        cwd: str | None = None,
    ) -> ExecResult:
        rendered = shlex.join(list(command))
        return ExecResult(
            stdout=(
                f'Demo mode: Command "{rendered}" simulated successfully\n'
                "Demo output: Command would run in live sandbox"
            ),
            stderr="",
            exit_code=0,
            simulated=True,
        )
