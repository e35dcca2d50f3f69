from contextlib import asynccontextmanager
from pathlib import Path
from dotenv import load_dotenv
from fastapi import FastAPI
import logging
import os

# Load environment variables BEFORE importing any modules that might need them
load_dotenv(Path(__file__).parent / ".env")

from app.core.config import get_sandbox_settings
from app.services.sandbox_session_registry import get_sandbox_session_registry

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Loads sandbox settings on startup and tears down the live sandbox on shutdown."""
    settings = get_sandbox_settings()
    logger.info(
        "Sandbox backend starting (provider=%s, demo_mode=%s, ttl=%ss)",
        settings.provider,
        settings.demo_mode,
        settings.ttl_seconds,
    )

    yield

    registry = get_sandbox_session_registry()
    if registry.current() is not None:
        await registry.kill()


app = FastAPI(title="Edu Bricks Sandbox API", version="0.1.0", lifespan=lifespan)

# Add CORS middleware
from fastapi.middleware.cors import CORSMiddleware

cors_origins_raw = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:3001")
cors_origins = [o.strip() for o in cors_origins_raw.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from app.api.responses import register_exception_handlers
from app.api.routers import sandbox

register_exception_handlers(app)
app.include_router(sandbox.router)


@app.get("/health")
def health_check():
    """Reports service health for uptime monitors."""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run("main:app", host="0.0.0.0", port=port, reload=True)
