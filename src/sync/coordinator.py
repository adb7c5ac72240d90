"""
Sync coordinator: the global state generation counter.

Clients detect "something changed somewhere" by comparing versions instead
of re-fetching every entity. Two complementary signals exist:

- the version counter, polled by every client in every process;
- an in-process signal, delivered immediately to listeners that share
  this process and data root.

A mutation and its bump are separate operations. If a process dies
between them, other clients stay stale until the next unrelated bump.
"""
import logging
import threading
from pathlib import Path
from typing import Callable

from src.shared.errors import BackendUnavailable
from src.storage.backends import Backends
from src.storage.mode import StorageMode

log = logging.getLogger(__name__)

SYNC_COUNTER = "sync_version"

Listener = Callable[[int], None]


class SyncSignal:
    """In-process broadcast of new versions."""

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, version: int) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(version)
            except Exception:
                log.exception("Sync listener failed")

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)


_signals: dict[Path, SyncSignal] = {}
_signals_lock = threading.Lock()


def signal_for(data_root: Path) -> SyncSignal:
    """Process-wide signal shared by every coordinator on the same data root."""
    key = Path(data_root).resolve()
    with _signals_lock:
        if key not in _signals:
            _signals[key] = SyncSignal()
        return _signals[key]


class SyncCoordinator:
    """Version counter plus same-process invalidation signal."""

    def __init__(self, backends: Backends):
        self.backends = backends
        self.signal = signal_for(backends.data_root)

    def get_version(self) -> int:
        """
        Current generation.

        Reads the shared counter when shared mode is enabled and falls back
        to the local counter when it cannot be reached. The two counters are
        never merged.
        """
        with self.backends.session() as s:
            if s.mode == StorageMode.SHARED:
                try:
                    rows = s.execute("SELECT version FROM sync_state WHERE id = 1")
                    return rows[0]["version"] if rows else 1
                except BackendUnavailable as e:
                    log.warning("Shared sync state unreachable, using local counter: %s", e)
            return s.read_counter(SYNC_COUNTER)

    def bump(self) -> int:
        """
        Increment the active counter by exactly one and notify listeners.

        The increment happens inside the database, so concurrent bumps from
        other processes are never lost.

        Returns:
            The new version.

        Raises:
            BackendUnavailable: Shared mode is enabled but unreachable.
        """
        with self.backends.session(write=True) as s:
            if s.mode == StorageMode.SHARED:
                if s.execute("UPDATE sync_state SET version = version + 1 WHERE id = 1") == 0:
                    # missing row means a fresh schema at version 1
                    s.execute("INSERT INTO sync_state (id, version) VALUES (1, 2)")
                version = s.execute("SELECT version FROM sync_state WHERE id = 1")[0]["version"]
            else:
                version = s.increment_counter(SYNC_COUNTER)
        log.debug("Sync version bumped to %d", version)
        self.signal.emit(version)
        return version

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.signal.subscribe(listener)

    def reset(self) -> int:
        """Explicit system reset: the active counter goes back to 1."""
        with self.backends.session(write=True) as s:
            if s.mode == StorageMode.SHARED:
                if s.execute("UPDATE sync_state SET version = 1 WHERE id = 1") == 0:
                    s.execute("INSERT INTO sync_state (id, version) VALUES (1, 1)")
            else:
                s.set_counter(SYNC_COUNTER, 1)
        log.info("Sync version reset to 1")
        self.signal.emit(1)
        return 1
