"""
Client poll loop.

Each connected client runs one poller. The first version it sees becomes
its baseline; afterwards every strictly greater version triggers one full
refresh of the client's visible data. Lower or equal versions are ignored,
which also covers a stale replica read or a fall back to the local counter.
"""
import logging
import sqlite3
import threading
from typing import Callable, Optional

from src.shared.errors import PanelError
from src.sync.coordinator import SyncCoordinator

log = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 2.0


class VersionTracker:
    """Baseline bookkeeping shared by the threaded poller and the SSE stream."""

    def __init__(self):
        self._lock = threading.Lock()
        self._baseline: Optional[int] = None

    @property
    def baseline(self) -> Optional[int]:
        with self._lock:
            return self._baseline

    def observe(self, version: int) -> bool:
        """Return True when `version` should trigger a refresh."""
        with self._lock:
            if self._baseline is None:
                self._baseline = version
                return False
            if version <= self._baseline:
                return False
            self._baseline = version
            return True

    def adopt(self, version: int) -> None:
        """Take `version` as baseline after a refresh driven by the local signal."""
        with self._lock:
            self._baseline = version


class SyncPoller:
    """
    Threaded poll loop for one client.

    Usage:
        with SyncPoller(coordinator, reload_view) as poller:
            ...
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        on_refresh: Callable[[], None],
        interval: float = DEFAULT_INTERVAL_SECONDS,
    ):
        self.coordinator = coordinator
        self.on_refresh = on_refresh
        self.interval = interval
        self.tracker = VersionTracker()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def baseline(self) -> Optional[int]:
        return self.tracker.baseline

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self) -> bool:
        """Poll once. Returns True when a refresh ran."""
        try:
            version = self.coordinator.get_version()
        except (PanelError, sqlite3.Error, OSError) as e:
            log.warning("Sync poll failed, retrying next tick: %s", e)
            return False
        if not self.tracker.observe(version):
            return False
        self._refresh()
        return True

    def _on_signal(self, version: int) -> None:
        self.tracker.adopt(version)
        self._refresh()

    def _refresh(self) -> None:
        try:
            self.on_refresh()
        except Exception:
            log.exception("Refresh callback failed")

    def _run(self) -> None:
        self.tick()
        while not self._stop.wait(self.interval):
            self.tick()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._unsubscribe = self.coordinator.subscribe(self._on_signal)
        self._thread = threading.Thread(target=self._run, name="sync-poller", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop polling and release the timer thread and the signal subscription."""
        self._stop.set()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def __enter__(self) -> "SyncPoller":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
