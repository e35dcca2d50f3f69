from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from typing import Any, Dict, Optional

from app.core.config import SandboxSettings, get_sandbox_settings
from app.services.sandbox_errors import InvalidRequestError
from app.services.sandbox_session_registry import SandboxSessionRegistry, get_sandbox_session_registry


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    command: str
    stdout: str
    stderr: str
    exit_code: Optional[int]
    is_demo: bool = False

    @property
    def output(self) -> str:
        if self.stderr:
            return f"{self.stdout}\n{self.stderr}" if self.stdout else self.stderr
        return self.stdout

    def to_payload(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "output": self.output,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exitCode": self.exit_code,
        }


async def run_command(
    command: str,
    *,
    registry: SandboxSessionRegistry | None = None,
    settings: SandboxSettings | None = None,
) -> CommandResult:
    """Run one command in the current sandbox's project directory."""
    text = (command or "").strip()
    if not text:
        raise InvalidRequestError(
            "Missing required parameter: command",
            code="MISSING_PARAMETER",
            details={"missingParams": ["command"]},
        )
    try:
        argv = shlex.split(text)
    except ValueError as exc:
        raise InvalidRequestError(f"Could not parse command: {exc}", details={"command": text}) from exc

    session = (registry or get_sandbox_session_registry()).get()
    settings = settings or get_sandbox_settings()
    logger.info("Running command in sandbox %s: %s", session.sandbox_id, text)
    result = await session.provider.exec(
        session.handle,
        argv,
        timeout=settings.command_timeout_seconds,
        cwd=session.app_dir,
    )
    return CommandResult(
        command=text,
        stdout=result.stdout,
        stderr=result.stderr,
        exit_code=result.exit_code,
        is_demo=session.is_demo or result.simulated,
    )
