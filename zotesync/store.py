"""SQLite store holding the replicated tables.

The application owns the schema and its migrations; ``init_schema`` only
bootstraps an empty store (fresh installs, tests) with the columns the sync
engine needs.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .sync.tables import SYNC_TABLES, TableConfig

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """The store cannot be opened or accessed."""


# Bookkeeping for the peer client (last server version seen, etc.)
SYNC_META_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

# Column types for the bootstrap schema; anything not listed is TEXT
_COLUMN_TYPES = {
    "size": "INTEGER",
    "version": "INTEGER NOT NULL DEFAULT 0",
    "created_at": "TEXT DEFAULT CURRENT_TIMESTAMP",
}


def _table_schema(config: TableConfig) -> str:
    columns = ["id INTEGER PRIMARY KEY AUTOINCREMENT"]
    for column in config.columns:
        if column == config.primary_key:
            columns.append(f"{column} TEXT UNIQUE")
        else:
            columns.append(f"{column} {_COLUMN_TYPES.get(column, 'TEXT')}")

    return (
        f"CREATE TABLE IF NOT EXISTS {config.name} (\n    "
        + ",\n    ".join(columns)
        + "\n);\n"
        f"CREATE INDEX IF NOT EXISTS idx_{config.name}_version ON {config.name}(version);\n"
    )


SCHEMA = "".join(_table_schema(t) for t in SYNC_TABLES) + SYNC_META_SCHEMA


class SyncStore:
    """Opens connections to the store file.

    Connections are opened fresh per request and closed afterwards; SQLite's
    own file locking serializes concurrent writers.
    """

    def __init__(self, db_path: str | Path, timeout: float = 5.0):
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file.
            timeout: Seconds to wait on a locked database.
        """
        self.db_path = Path(db_path).expanduser()
        self.timeout = timeout

    def connect(self) -> sqlite3.Connection:
        """Open a new connection.

        Raises:
            StoreError: If the file cannot be opened.
        """
        try:
            conn = sqlite3.connect(
                str(self.db_path), timeout=self.timeout, check_same_thread=False
            )
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open store {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def open(self) -> Iterator[sqlite3.Connection]:
        """Open a connection for the duration of a block."""
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Create the replicated tables if they do not exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.open() as conn:
            conn.executescript(SCHEMA)
            conn.commit()
        logger.info(f"Store schema ready at {self.db_path}")

    def get_meta(self, key: str, default: str | None = None) -> str | None:
        """Read a sync bookkeeping value."""
        with self.open() as conn:
            conn.executescript(SYNC_META_SCHEMA)
            row = conn.execute(
                "SELECT value FROM sync_meta WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else default

    def set_meta(self, key: str, value: str) -> None:
        """Write a sync bookkeeping value."""
        with self.open() as conn:
            conn.executescript(SYNC_META_SCHEMA)
            conn.execute(
                """
                INSERT INTO sync_meta (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )
            conn.commit()
