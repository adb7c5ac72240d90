"""
Application state: runtime settings shared by the web layer and services.
"""
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class AppState:
    """Global panel settings resolved from the environment."""
    data_root: Path
    sync_interval_seconds: float = 2.0
    admin_can_post_on_closed: bool = True
    # Stand-in sign-in route for development and tests; never enable in production.
    dev_identity: bool = False

    @classmethod
    def from_env(cls, data_root: Path | None = None) -> "AppState":
        root = data_root or Path(os.environ.get("VELOX_DATA_ROOT", "./data"))
        return cls(
            data_root=Path(root),
            sync_interval_seconds=float(os.environ.get("VELOX_SYNC_INTERVAL", "2.0")),
            admin_can_post_on_closed=os.environ.get("VELOX_ADMIN_POST_ON_CLOSED", "1") != "0",
            dev_identity=os.environ.get("VELOX_DEV_IDENTITY", "0") == "1",
        )
