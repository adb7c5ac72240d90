"""
Storage sessions: one resolved mode per logical operation.

A session pins the storage mode for its duration and owns the connections
used by every repository call made through it. Write sessions take the
database write lock (BEGIN IMMEDIATE) on first use and commit on exit, so
several repository calls inside one session are all-or-nothing.
On a shared server database the write lock is a row lock on sync_state.
"""
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Mapping, Optional, Sequence

from sqlalchemy import Table
from sqlalchemy.engine import Connection, RootTransaction
from sqlalchemy.exc import SQLAlchemyError

from src.shared.errors import AppErrors, BackendUnavailable, format_db_error
from src.storage.local_store import LocalStore
from src.storage.mode import (
    ServerMode,
    StorageMode,
    config_for,
    disabled,
    load_db_config,
    load_server_mode,
    resolve_mode,
    save_db_config,
)
from src.storage.shared_store import SharedStore, begin, run, run_insert

log = logging.getLogger(__name__)


class StorageSession:
    """Connections for one logical operation in one storage mode."""

    def __init__(
        self,
        mode: StorageMode,
        local: LocalStore,
        shared: Optional[SharedStore],
        write: bool = False,
    ):
        self.mode = mode
        self.write = write
        self._local = local
        self._shared = shared
        self._local_conn: Optional[sqlite3.Connection] = None
        self._shared_conn: Optional[Connection] = None
        self._shared_tx: Optional[RootTransaction] = None

    # ── Shared ──

    def _shared_connection(self) -> Connection:
        if self._shared is None:
            raise BackendUnavailable(AppErrors.SHARED_UNREACHABLE)
        if self._shared_conn is None:
            conn = self._shared.connect()
            try:
                self._shared_tx = begin(conn, self.write)
            except BackendUnavailable:
                conn.close()
                raise
            self._shared_conn = conn
        return self._shared_conn

    def execute(self, sql: str, params: Optional[Mapping] = None) -> list[dict] | int:
        return run(self._shared_connection(), sql, params)

    def insert(self, sql: str, params: Optional[Mapping] = None) -> int:
        return run_insert(self._shared_connection(), sql, params)

    # ── Local ──

    def _local_connection(self) -> sqlite3.Connection:
        if self._local_conn is None:
            conn = self._local.connect()
            if self.write:
                try:
                    conn.execute("BEGIN IMMEDIATE")
                except sqlite3.OperationalError as e:
                    conn.close()
                    log.warning("Local store write lock not acquired: %s", e)
                    raise BackendUnavailable(AppErrors.LOCAL_BUSY) from e
            self._local_conn = conn
        return self._local_conn

    def read_collection(self, key: str) -> list[dict]:
        return LocalStore.read_collection(self._local_connection(), key)

    def write_collection(self, key: str, records: list[dict]) -> None:
        LocalStore.write_collection(self._local_connection(), key, records)

    def read_counter(self, name: str) -> int:
        return LocalStore.read_counter(self._local_connection(), name)

    def increment_counter(self, name: str) -> int:
        return LocalStore.increment_counter(self._local_connection(), name)

    def set_counter(self, name: str, value: int) -> None:
        LocalStore.set_counter(self._local_connection(), name, value)

    def clear_local(self) -> None:
        LocalStore.clear(self._local_connection())

    # ── Lifecycle ──

    def commit(self) -> None:
        """Commit shared first so the mirror never runs ahead of it."""
        if self._shared_tx is not None and self._shared_tx.is_active:
            try:
                self._shared_tx.commit()
            except SQLAlchemyError as e:
                raise BackendUnavailable(format_db_error(e)) from e
        if self._local_conn is not None and self._local_conn.in_transaction:
            self._local_conn.execute("COMMIT")

    def rollback(self) -> None:
        if self._shared_tx is not None and self._shared_tx.is_active:
            try:
                self._shared_tx.rollback()
            except SQLAlchemyError as e:
                log.warning("Shared rollback failed: %s", e)
        if self._local_conn is not None and self._local_conn.in_transaction:
            try:
                self._local_conn.execute("ROLLBACK")
            except sqlite3.Error as e:
                log.warning("Local rollback failed: %s", e)

    def close(self) -> None:
        for conn in (self._shared_conn, self._local_conn):
            if conn is not None:
                conn.close()
        self._shared_conn = None
        self._shared_tx = None
        self._local_conn = None


class Backends:
    """Entry point to both stores for a data root."""

    def __init__(self, data_root: Path):
        self.data_root = Path(data_root)
        self.local = LocalStore(self.data_root)

    def resolve_mode(self) -> StorageMode:
        return resolve_mode(self.data_root)

    def shared_store(self) -> Optional[SharedStore]:
        config = load_db_config(self.data_root)
        if config is None or not config.enabled:
            return None
        return SharedStore.from_config(config)

    @contextmanager
    def session(self, write: bool = False) -> Iterator[StorageSession]:
        """
        Open a session for one logical operation.

        Raises:
            BackendUnavailable: On a local write while server mode forbids it.
        """
        shared = self.shared_store()
        mode = StorageMode.SHARED if shared is not None else StorageMode.LOCAL
        if write and mode == StorageMode.LOCAL and load_server_mode(self.data_root) == ServerMode.SERVER:
            raise BackendUnavailable(AppErrors.SERVER_MODE_LOCAL_WRITE)

        session = StorageSession(mode, self.local, shared, write=write)
        try:
            yield session
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def initialize_shared(self, target: str | Path, tables: Sequence[Table] = ()) -> SharedStore:
        """Create the shared schema at `target` (a database URL or an SQLite path) and enable shared mode."""
        config = config_for(str(target))
        store = SharedStore.from_config(config)
        store.initialize(tables)
        save_db_config(self.data_root, config)
        return store

    def disable_shared(self) -> None:
        config = load_db_config(self.data_root)
        if config is not None:
            save_db_config(self.data_root, disabled(config))
