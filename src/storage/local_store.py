"""
Local store: an embedded SQLite key/value file under the data root.

Each entity collection is one keyed record holding the whole serialized
collection. There are no partial updates at the byte level: readers load
the full list and writers replace it. Concurrent writers from different
processes are last-writer-wins per collection.
"""
import json
import sqlite3
from pathlib import Path

LOCAL_DB_FILENAME = "local_store.sqlite"


class LocalStore:
    """Whole-collection read/replace store plus atomic named counters."""

    def __init__(self, data_root: Path):
        self.data_root = Path(data_root)
        self.data_root.mkdir(parents=True, exist_ok=True)
        self.db_path = self.data_root / LOCAL_DB_FILENAME
        self.timeout = 10.0
        self._init_schema()

    def _init_schema(self):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS collections (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS counters (
                    name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)
            conn.commit()

    def connect(self) -> sqlite3.Connection:
        """Open a connection in autocommit mode; callers manage BEGIN/COMMIT."""
        return sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)

    # ── Collections ──

    @staticmethod
    def read_collection(conn: sqlite3.Connection, key: str) -> list[dict]:
        row = conn.execute(
            "SELECT value FROM collections WHERE key = ?", (key,)
        ).fetchone()
        if not row:
            return []
        data = json.loads(row[0])
        return data if isinstance(data, list) else []

    @staticmethod
    def write_collection(conn: sqlite3.Connection, key: str, records: list[dict]) -> None:
        conn.execute(
            "INSERT INTO collections (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, json.dumps(records)),
        )

    def load(self, key: str) -> list[dict]:
        """Read one collection outside of a session."""
        with sqlite3.connect(self.db_path) as conn:
            return self.read_collection(conn, key)

    # ── Counters ──

    @staticmethod
    def read_counter(conn: sqlite3.Connection, name: str, default: int = 1) -> int:
        row = conn.execute(
            "SELECT value FROM counters WHERE name = ?", (name,)
        ).fetchone()
        return row[0] if row else default

    @staticmethod
    def increment_counter(conn: sqlite3.Connection, name: str, start: int = 1) -> int:
        """Atomically add one to a counter that defaults to `start`."""
        conn.execute(
            "INSERT INTO counters (name, value) VALUES (?, ?) "
            "ON CONFLICT(name) DO UPDATE SET value = value + 1",
            (name, start + 1),
        )
        return conn.execute(
            "SELECT value FROM counters WHERE name = ?", (name,)
        ).fetchone()[0]

    @staticmethod
    def set_counter(conn: sqlite3.Connection, name: str, value: int) -> None:
        conn.execute(
            "INSERT INTO counters (name, value) VALUES (?, ?) "
            "ON CONFLICT(name) DO UPDATE SET value = excluded.value",
            (name, value),
        )

    @staticmethod
    def clear(conn: sqlite3.Connection) -> None:
        conn.execute("DELETE FROM collections")
        conn.execute("DELETE FROM counters")
