"""
Logging configuration for the panel process.

Call configure_logging() once at app startup. VELOX_LOG_LEVEL overrides the
level (DEBUG shows every sync bump and storage fallback).
"""
import logging
import os
import sys

LOG_LEVEL_ENV = "VELOX_LOG_LEVEL"

# Chatty at INFO: pool checkouts, SSE pings, per-request access lines.
QUIET_LOGGERS = (
    "uvicorn.access",
    "sse_starlette",
    "httpx",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
)


def resolve_level(default: int = logging.INFO) -> int:
    """Level from VELOX_LOG_LEVEL (a name such as "debug"), else `default`."""
    name = os.environ.get(LOG_LEVEL_ENV, "").strip().upper()
    if not name:
        return default
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else default


def configure_logging(level: int = logging.INFO) -> None:
    """Configure the root logger; storage and sync modules log under src.*."""
    logging.basicConfig(
        level=resolve_level(level),
        format="%(asctime)s %(levelname)-8s [%(process)d] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
