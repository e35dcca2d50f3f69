import os
import sys

import pytest
import pytest_asyncio

os.environ.setdefault("SANDBOX_PROVIDER", "local")
os.environ.setdefault("SANDBOX_DEV_STARTUP_DELAY_SECONDS", "0")

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.config import reset_sandbox_settings
from app.services.sandbox_package_installer import reset_sandbox_package_installer
from app.services.sandbox_session_registry import reset_sandbox_session_registry


@pytest.fixture(autouse=True)
def _reset_sandbox_singletons():
    reset_sandbox_settings()
    reset_sandbox_session_registry()
    reset_sandbox_package_installer()
    yield
    reset_sandbox_settings()
    reset_sandbox_session_registry()
    reset_sandbox_package_installer()


@pytest_asyncio.fixture
async def client():
    from main import app

    from httpx import AsyncClient, ASGITransport
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
