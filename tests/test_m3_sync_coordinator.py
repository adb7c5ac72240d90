"""
M3 Acceptance Tests: Sync coordinator and client poller.
"""
import threading

import pytest

from src.shared.errors import BackendUnavailable
from src.storage.backends import Backends
from src.storage.collections import all_specs
from src.storage.mode import SHARED_DB_ENV, SHARED_DB_URL_ENV, StorageMode
from src.sync.coordinator import SYNC_COUNTER, SyncCoordinator, SyncSignal, signal_for
from src.sync.poller import SyncPoller, VersionTracker


@pytest.fixture(autouse=True)
def _no_env_override(monkeypatch):
    monkeypatch.delenv(SHARED_DB_ENV, raising=False)
    monkeypatch.delenv(SHARED_DB_URL_ENV, raising=False)


@pytest.fixture
def local_backends(tmp_path):
    return Backends(tmp_path / "data")


@pytest.fixture
def shared_backends(tmp_path):
    backends = Backends(tmp_path / "data")
    backends.initialize_shared(tmp_path / "shared.sqlite", [s.schema() for s in all_specs()])
    return backends


class FakeCoordinator:
    """Returns a scripted sequence of versions; repeats the last one."""

    def __init__(self, versions):
        self.versions = list(versions)
        self.calls = 0
        self.signal = SyncSignal()

    def get_version(self):
        index = min(self.calls, len(self.versions) - 1)
        self.calls += 1
        value = self.versions[index]
        if isinstance(value, Exception):
            raise value
        return value

    def subscribe(self, listener):
        return self.signal.subscribe(listener)


# ── Coordinator ──


def test_version_defaults_to_one(local_backends):
    assert SyncCoordinator(local_backends).get_version() == 1


def test_shared_version_defaults_to_one(shared_backends):
    assert SyncCoordinator(shared_backends).get_version() == 1


@pytest.mark.parametrize("fixture_name", ["local_backends", "shared_backends"])
def test_bump_adds_exactly_one(request, fixture_name):
    coordinator = SyncCoordinator(request.getfixturevalue(fixture_name))
    assert coordinator.bump() == 2
    assert coordinator.bump() == 3
    assert coordinator.get_version() == 3


@pytest.mark.parametrize("fixture_name", ["local_backends", "shared_backends"])
def test_concurrent_bumps_are_not_lost(request, fixture_name):
    backends = request.getfixturevalue(fixture_name)
    coordinator = SyncCoordinator(backends)
    start = coordinator.get_version()
    errors = []

    def worker():
        try:
            # each thread gets its own coordinator, as separate requests would
            SyncCoordinator(backends).bump()
        except Exception as e:  # noqa: BLE001
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert coordinator.get_version() == start + 20


def test_version_is_non_decreasing(local_backends):
    coordinator = SyncCoordinator(local_backends)
    seen = [coordinator.get_version()]
    for _ in range(5):
        coordinator.bump()
        seen.append(coordinator.get_version())
    assert seen == sorted(seen)
    assert len(set(seen)) == len(seen)


def test_bump_emits_signal(local_backends):
    coordinator = SyncCoordinator(local_backends)
    received = []
    unsubscribe = coordinator.subscribe(received.append)
    try:
        coordinator.bump()
        coordinator.bump()
    finally:
        unsubscribe()
    assert received == [2, 3]


def test_signal_is_shared_per_data_root(tmp_path):
    a = SyncCoordinator(Backends(tmp_path / "data"))
    b = SyncCoordinator(Backends(tmp_path / "data"))
    other = SyncCoordinator(Backends(tmp_path / "other"))

    assert a.signal is b.signal
    assert a.signal is signal_for(tmp_path / "data")
    assert other.signal is not a.signal


def test_failing_listener_does_not_block_others():
    signal = SyncSignal()
    received = []

    def broken(_version):
        raise RuntimeError("listener bug")

    signal.subscribe(broken)
    signal.subscribe(received.append)
    signal.emit(4)
    assert received == [4]


def test_unsubscribe_removes_listener():
    signal = SyncSignal()
    unsubscribe = signal.subscribe(lambda v: None)
    assert signal.listener_count == 1
    unsubscribe()
    unsubscribe()
    assert signal.listener_count == 0


def test_unreachable_shared_falls_back_to_local_counter(shared_backends, tmp_path):
    coordinator = SyncCoordinator(shared_backends)
    coordinator.bump()
    coordinator.bump()
    assert coordinator.get_version() == 3

    (tmp_path / "shared.sqlite").unlink()

    # the local counter was never bumped in shared mode
    assert coordinator.get_version() == 1


def test_bump_fails_loudly_when_shared_unreachable(shared_backends, tmp_path):
    coordinator = SyncCoordinator(shared_backends)
    (tmp_path / "shared.sqlite").unlink()
    with pytest.raises(BackendUnavailable):
        coordinator.bump()


def test_counters_are_per_backend(shared_backends):
    coordinator = SyncCoordinator(shared_backends)
    coordinator.bump()
    coordinator.bump()

    shared_backends.disable_shared()
    assert shared_backends.resolve_mode() == StorageMode.LOCAL
    assert coordinator.get_version() == 1
    assert coordinator.bump() == 2


def test_reset_returns_to_one(local_backends):
    coordinator = SyncCoordinator(local_backends)
    coordinator.bump()
    coordinator.bump()
    received = []
    unsubscribe = coordinator.subscribe(received.append)
    try:
        assert coordinator.reset() == 1
    finally:
        unsubscribe()
    assert coordinator.get_version() == 1
    assert received == [1]

    with local_backends.session() as s:
        assert s.read_counter(SYNC_COUNTER) == 1


# ── Poller ──


def test_tracker_first_version_is_baseline():
    tracker = VersionTracker()
    assert tracker.observe(5) is False
    assert tracker.baseline == 5
    assert tracker.observe(5) is False
    assert tracker.observe(4) is False
    assert tracker.observe(6) is True
    assert tracker.baseline == 6


def test_poller_refreshes_once_per_increase():
    refreshes = []
    poller = SyncPoller(FakeCoordinator([5, 5, 6]), lambda: refreshes.append(1))

    assert poller.tick() is False
    assert poller.baseline == 5
    assert poller.tick() is False
    assert poller.tick() is True
    assert poller.baseline == 6
    assert len(refreshes) == 1


def test_poller_ignores_lower_versions():
    refreshes = []
    poller = SyncPoller(FakeCoordinator([7, 3, 7, 8]), lambda: refreshes.append(1))
    results = [poller.tick() for _ in range(4)]
    assert results == [False, False, False, True]
    assert poller.baseline == 8


def test_poller_survives_backend_errors():
    refreshes = []
    coordinator = FakeCoordinator([2, BackendUnavailable("down"), 3])
    poller = SyncPoller(coordinator, lambda: refreshes.append(1))

    assert poller.tick() is False
    assert poller.tick() is False
    assert poller.baseline == 2
    assert poller.tick() is True
    assert len(refreshes) == 1


def test_poller_survives_refresh_errors():
    def broken():
        raise RuntimeError("view crashed")

    poller = SyncPoller(FakeCoordinator([1, 2]), broken)
    poller.tick()
    assert poller.tick() is True
    assert poller.baseline == 2


def test_local_signal_refreshes_and_moves_baseline():
    refreshes = []
    coordinator = FakeCoordinator([3])
    poller = SyncPoller(coordinator, lambda: refreshes.append(1), interval=60)
    poller.tick()

    poller.start()
    try:
        coordinator.signal.emit(4)
    finally:
        poller.stop(timeout=5)

    assert poller.baseline == 4
    assert len(refreshes) == 1


def test_stop_releases_thread_and_subscription():
    coordinator = FakeCoordinator([1])
    poller = SyncPoller(coordinator, lambda: None, interval=0.01)

    poller.start()
    assert poller.running
    assert coordinator.signal.listener_count == 1

    poller.stop(timeout=5)
    assert not poller.running
    assert coordinator.signal.listener_count == 0


def test_poller_context_manager_polls_real_coordinator(local_backends):
    coordinator = SyncCoordinator(local_backends)
    refreshed = threading.Event()

    with SyncPoller(coordinator, refreshed.set, interval=0.05) as poller:
        # wait until the baseline is taken, then change state
        for _ in range(100):
            if poller.baseline is not None:
                break
            threading.Event().wait(0.01)
        coordinator.bump()
        assert refreshed.wait(5)

    assert not poller.running


def test_poller_resumes_shared_polling_after_outage(shared_backends, tmp_path):
    """The local fallback counter never looks newer; the next shared bump refreshes exactly once."""
    coordinator = SyncCoordinator(shared_backends)
    coordinator.bump()
    coordinator.bump()
    refreshes = []
    poller = SyncPoller(coordinator, lambda: refreshes.append(1))

    assert poller.tick() is False
    assert poller.baseline == 3

    shared_file = tmp_path / "shared.sqlite"
    parked = tmp_path / "shared.parked"
    shared_file.rename(parked)
    assert poller.tick() is False
    assert poller.baseline == 3

    parked.rename(shared_file)
    assert poller.tick() is False

    assert coordinator.bump() == 4
    assert poller.tick() is True
    assert poller.tick() is False
    assert refreshes == [1]
    assert poller.baseline == 4


def test_missing_sync_row_is_recreated_on_bump(shared_backends):
    store = shared_backends.shared_store()
    store.execute("DELETE FROM sync_state")

    assert SyncCoordinator(shared_backends).bump() == 2
    assert store.execute("SELECT version FROM sync_state WHERE id = 1") == [{"version": 2}]
