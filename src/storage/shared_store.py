"""
Shared store: the relational database every panel process can reach.

Configured by a SQLAlchemy database URL: a PostgreSQL or MySQL server for
deployments spread over several hosts, or an SQLite file for a single
host. The only primitive the core needs is execute(sql, params), returning
rows for queries and the affected row count otherwise. SQL uses named
`:param` binds and no dialect-specific statements. Driver errors are
converted to BackendUnavailable so callers never see SQLAlchemy exceptions.
"""
import logging
import threading
from pathlib import Path
from typing import Iterable, Mapping, Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Connection, Engine, RootTransaction, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.pool import NullPool

from src.shared.errors import BackendUnavailable, format_db_error
from src.storage.mode import SharedDbConfig

log = logging.getLogger(__name__)

SYSTEM_METADATA = MetaData()

SYNC_STATE = Table(
    "sync_state",
    SYSTEM_METADATA,
    Column("id", Integer, primary_key=True, autoincrement=False),
    Column("version", Integer, nullable=False, default=1),
)

SYSTEM_SETTINGS = Table(
    "system_settings",
    SYSTEM_METADATA,
    Column("setting_key", String(191), primary_key=True),
    Column("setting_value", Text, nullable=False),
)

# Server databases have no BEGIN IMMEDIATE; locking the sync row serializes writers instead.
WRITE_LOCK_SQL = "SELECT version FROM sync_state WHERE id = 1 FOR UPDATE"

_WRITE_FLAG = "velox_write"
SQLITE_TIMEOUT_SECONDS = 10

_engines: dict[str, Engine] = {}
_engines_lock = threading.Lock()


def sqlite_url(path: str | Path) -> str:
    """URL for an SQLite file that must already exist (mode=rw)."""
    return f"sqlite:///file:{Path(path).resolve().as_posix()}?mode=rw&uri=true"


def display_url(url: str) -> str:
    try:
        return make_url(url).render_as_string(hide_password=True)
    except ArgumentError:
        return "<invalid database url>"


def _sqlite_on_connect(dbapi_connection, connection_record):
    # transactions are started by the begin hook below, not by the driver
    dbapi_connection.isolation_level = None


def _sqlite_on_begin(conn: Connection):
    conn.exec_driver_sql("BEGIN IMMEDIATE" if conn.info.get(_WRITE_FLAG) else "BEGIN")


def _create_engine(url: str) -> Engine:
    if make_url(url).get_backend_name() == "sqlite":
        # NullPool: every operation opens the file again, so a vanished file reads as unreachable
        engine = create_engine(
            url,
            poolclass=NullPool,
            connect_args={"timeout": SQLITE_TIMEOUT_SECONDS},
        )
        event.listen(engine, "connect", _sqlite_on_connect)
        event.listen(engine, "begin", _sqlite_on_begin)
        return engine
    return create_engine(url, pool_pre_ping=True, pool_recycle=1800)


def get_engine(url: str) -> Engine:
    """One engine per URL for the life of the process."""
    with _engines_lock:
        engine = _engines.get(url)
        if engine is None:
            engine = _create_engine(url)
            _engines[url] = engine
        return engine


def run(conn: Connection, sql: str, params: Optional[Mapping] = None) -> list[dict] | int:
    """Execute one statement on an open shared connection."""
    try:
        result = conn.execute(text(sql), dict(params or {}))
        if result.returns_rows:
            return [dict(row._mapping) for row in result]
        return result.rowcount
    except SQLAlchemyError as e:
        raise BackendUnavailable(format_db_error(e)) from e


def run_insert(conn: Connection, sql: str, params: Optional[Mapping] = None) -> int:
    """Execute an INSERT and return the generated id."""
    try:
        if conn.dialect.insert_returning:
            return conn.execute(text(f"{sql} RETURNING id"), dict(params or {})).scalar_one()
        return conn.execute(text(sql), dict(params or {})).lastrowid
    except SQLAlchemyError as e:
        raise BackendUnavailable(format_db_error(e)) from e


def begin(conn: Connection, write: bool) -> RootTransaction:
    """
    Start a transaction. Write transactions take the database write lock up
    front so a read-then-insert inside them cannot interleave with another
    writer.
    """
    conn.info[_WRITE_FLAG] = write
    try:
        tx = conn.begin()
        if write and conn.dialect.name != "sqlite":
            conn.execute(text(WRITE_LOCK_SQL))
    except SQLAlchemyError as e:
        raise BackendUnavailable(format_db_error(e)) from e
    return tx


class SharedStore:
    """Connection factory and schema owner for the shared database."""

    def __init__(self, url: str, path: Optional[str | Path] = None):
        self.url = url
        self.path = Path(path) if path is not None else None

    @classmethod
    def from_config(cls, config: SharedDbConfig) -> "SharedStore":
        if config.url:
            return cls(config.url)
        return cls(sqlite_url(config.path), path=config.path)

    def __repr__(self) -> str:
        return f"SharedStore({display_url(self.url)})"

    def connect(self) -> Connection:
        """
        Open a connection.

        An SQLite file must already exist: a missing database means the
        shared backend is unreachable, not that a new one should appear.

        Raises:
            BackendUnavailable: If the database cannot be reached.
        """
        try:
            return get_engine(self.url).connect()
        except (SQLAlchemyError, ImportError) as e:
            log.warning("Shared database %s unreachable: %s", display_url(self.url), e)
            raise BackendUnavailable(format_db_error(e)) from e

    def execute(self, sql: str, params: Optional[Mapping] = None) -> list[dict] | int:
        """One-shot execute in its own transaction."""
        conn = self.connect()
        try:
            tx = begin(conn, write=False)
            try:
                result = run(conn, sql, params)
            except BackendUnavailable:
                tx.rollback()
                raise
            tx.commit()
            return result
        except SQLAlchemyError as e:
            raise BackendUnavailable(format_db_error(e)) from e
        finally:
            conn.close()

    def initialize(self, tables: Iterable[Table] = ()) -> None:
        """
        Create the schema and seed sync_state, idempotently.

        Args:
            tables: Entity collection tables.
        """
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.touch(exist_ok=True)
        conn = self.connect()
        try:
            with conn.begin():
                for table in [*tables, *SYSTEM_METADATA.sorted_tables]:
                    table.create(conn, checkfirst=True)
                if not run(conn, "SELECT id FROM sync_state WHERE id = 1"):
                    run(conn, "INSERT INTO sync_state (id, version) VALUES (1, 1)")
        except SQLAlchemyError as e:
            raise BackendUnavailable(format_db_error(e)) from e
        finally:
            conn.close()
        log.info("Shared database initialized at %s", display_url(self.url))
