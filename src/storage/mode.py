"""
Backend mode resolver.

Decides, per logical operation, whether the shared database is configured
and enabled. Absent or malformed configuration is a normal state and
resolves to local mode; nothing here raises for it.
"""
import json
import logging
import os
from dataclasses import asdict, dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Optional

log = logging.getLogger(__name__)

DB_CONFIG_FILENAME = "database_config.json"
SYSTEM_CONFIG_FILENAME = "system_config.json"
SHARED_DB_ENV = "VELOX_SHARED_DB_PATH"
SHARED_DB_URL_ENV = "VELOX_SHARED_DB_URL"


class StorageMode(str, Enum):
    LOCAL = "local"
    SHARED = "shared"


class ServerMode(str, Enum):
    """Deployment flavour. SERVER forbids writes to the local store."""
    LOCAL = "local"
    SERVER = "server"


@dataclass
class SharedDbConfig:
    """
    Where the shared database lives.

    `url` is any SQLAlchemy database URL. `path` is shorthand for an SQLite
    file on a disk every process can reach. When both are set, `url` wins.
    """
    path: Optional[str] = None
    enabled: bool = True
    url: Optional[str] = None

    @property
    def target(self) -> str:
        return self.url or self.path or ""


def config_for(target: str | Path, enabled: bool = True) -> SharedDbConfig:
    """Build a config from user input: a database URL or an SQLite file path."""
    target = str(target).strip()
    if "://" in target:
        return SharedDbConfig(url=target, enabled=enabled)
    return SharedDbConfig(path=target, enabled=enabled)


def load_db_config(data_root: Path) -> Optional[SharedDbConfig]:
    """
    Read shared database configuration.

    Priority 1: VELOX_SHARED_DB_URL (always enabled).
    Priority 2: VELOX_SHARED_DB_PATH (always enabled).
    Priority 3: <data_root>/database_config.json.

    Returns:
        SharedDbConfig or None when missing or unparseable.
    """
    env_url = os.environ.get(SHARED_DB_URL_ENV, "").strip()
    if env_url:
        return SharedDbConfig(url=env_url, enabled=True)
    env_path = os.environ.get(SHARED_DB_ENV, "").strip()
    if env_path:
        return SharedDbConfig(path=env_path, enabled=True)

    config_file = Path(data_root) / DB_CONFIG_FILENAME
    if not config_file.exists():
        return None
    try:
        data = json.loads(config_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        log.warning("Ignoring unreadable %s: %s", config_file, e)
        return None

    if not isinstance(data, dict):
        log.warning("Ignoring %s: expected a JSON object", config_file)
        return None
    url = _non_empty(data.get("url"))
    path = _non_empty(data.get("path"))
    if url is None and path is None:
        log.warning("Ignoring %s: neither 'url' nor 'path' is set", config_file)
        return None
    return SharedDbConfig(path=path, url=url, enabled=data.get("enabled") is True)


def _non_empty(value) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def save_db_config(data_root: Path, config: SharedDbConfig) -> None:
    data_root = Path(data_root)
    data_root.mkdir(parents=True, exist_ok=True)
    (data_root / DB_CONFIG_FILENAME).write_text(
        json.dumps(asdict(config), indent=2), encoding="utf-8"
    )


def disabled(config: SharedDbConfig) -> SharedDbConfig:
    return replace(config, enabled=False)


def resolve_mode(data_root: Path) -> StorageMode:
    """Return SHARED only when configuration is present, parseable and enabled."""
    config = load_db_config(data_root)
    if config is not None and config.enabled:
        return StorageMode.SHARED
    return StorageMode.LOCAL


def load_server_mode(data_root: Path) -> ServerMode:
    """Read system_config.json; defaults to LOCAL when absent or invalid."""
    config_file = Path(data_root) / SYSTEM_CONFIG_FILENAME
    if not config_file.exists():
        return ServerMode.LOCAL
    try:
        data = json.loads(config_file.read_text(encoding="utf-8"))
        return ServerMode(data.get("server_mode", ServerMode.LOCAL.value))
    except (OSError, json.JSONDecodeError, AttributeError, ValueError) as e:
        log.warning("Failed to read system config, using local: %s", e)
        return ServerMode.LOCAL


def save_server_mode(data_root: Path, mode: ServerMode) -> None:
    data_root = Path(data_root)
    data_root.mkdir(parents=True, exist_ok=True)
    (data_root / SYSTEM_CONFIG_FILENAME).write_text(
        json.dumps({"server_mode": ServerMode(mode).value}, indent=2), encoding="utf-8"
    )
