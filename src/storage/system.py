"""
System-level storage operations: shared database setup and full reset.
"""
import logging
from pathlib import Path

from src.storage.backends import Backends
from src.storage.collections import all_specs
from src.storage.dual_repository import DualBackendRepository
from src.storage.settings_repository import SettingsRepository
from src.storage.shared_store import SharedStore
from src.sync.coordinator import SyncCoordinator

log = logging.getLogger(__name__)


def initialize_shared_database(backends: Backends, target: str | Path) -> SharedStore:
    """
    Create every shared table, seed sync_state, and switch to shared mode.

    Safe to run against an existing database.
    """
    store = backends.initialize_shared(target, [spec.schema() for spec in all_specs()])
    log.info("Shared mode enabled with database %s", store)
    return store


def reset_system(backends: Backends, coordinator: SyncCoordinator) -> None:
    """Delete every record in the active backend and its mirror, then reset the version to 1."""
    with backends.session(write=True) as s:
        for spec in all_specs():
            DualBackendRepository(spec, backends).clear(session=s)
        SettingsRepository(backends).clear(s)
    log.warning("System reset: all collections cleared (%s mode)", backends.resolve_mode().value)
    coordinator.reset()
