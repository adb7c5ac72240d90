"""
FastAPI application for the Velox panel.
"""
import logging
import os
import secrets
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware

from src.shared.logging_config import configure_logging
from src.web import dependencies

log = logging.getLogger(__name__)


def _get_session_secret() -> str:
    """Get or generate a persistent session secret key."""
    env_key = os.environ.get("SESSION_SECRET")
    if env_key:
        return env_key
    data_root = dependencies.DATA_ROOT
    data_root.mkdir(parents=True, exist_ok=True)
    key_file = data_root / ".session_key"
    if key_file.exists():
        return key_file.read_text().strip()
    key = secrets.token_hex(32)
    key_file.write_text(key)
    return key


def _log_storage_mode():
    """Report the storage mode on startup; the shared database may be down."""
    backends = dependencies.get_backends()
    mode = backends.resolve_mode()
    log.info("Storage mode: %s (data root %s)", mode.value, backends.data_root)
    try:
        log.info("Sync version: %d", dependencies.get_coordinator().get_version())
    except Exception as e:
        log.warning("Could not read sync version: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown events."""
    _log_storage_mode()
    yield


app = FastAPI(title="Velox Panel", version="0.3.0", lifespan=lifespan)
app.add_middleware(SessionMiddleware, secret_key=_get_session_secret())

# Import and include routers
from src.web.routers import collections, settings, support, sync  # noqa: E402

app.include_router(sync.router)
app.include_router(collections.router)
app.include_router(support.router)
app.include_router(settings.router)


@app.get("/")
async def index():
    backends = dependencies.get_backends()
    return {"app": "Velox Panel", "storage_mode": backends.resolve_mode().value}


def main():
    configure_logging()
    uvicorn.run(
        "src.web.app:app",
        host="0.0.0.0",
        port=int(os.environ.get("VELOX_PORT", "8000")),
        reload=False,
    )


if __name__ == "__main__":
    main()
