from app.core.config import SandboxSettings

from .base import ExecResult, ProviderType, SandboxHandle, SandboxProvider, python_command
from .controller import ControllerSandboxProvider, ControllerSandboxProviderConfig, ControllerSandboxProviderError
from .demo import DEMO_HOST, DemoSandboxProvider
from .local import LocalSandboxProvider


def get_sandbox_provider(settings: SandboxSettings) -> SandboxProvider:
    if settings.provider == "local":
        return LocalSandboxProvider(root_dir=settings.local_root_dir, dev_port=settings.dev_port)
    return ControllerSandboxProvider(
        ControllerSandboxProviderConfig(
            controller_url=settings.controller_url,
            api_key=settings.api_key,
            request_timeout_seconds=max(30.0, settings.create_timeout_seconds),
            default_app_dir=settings.app_dir,
            dev_port=settings.dev_port,
        )
    )


__all__ = [
    "DEMO_HOST",
    "ControllerSandboxProvider",
    "ControllerSandboxProviderConfig",
    "ControllerSandboxProviderError",
    "DemoSandboxProvider",
    "ExecResult",
    "LocalSandboxProvider",
    "ProviderType",
    "SandboxHandle",
    "SandboxProvider",
    "get_sandbox_provider",
    "python_command",
]
