"""
Durable key-value storage for cache snapshots.

The cache only needs get/set/remove on string values; MemoryStorage backs
tests and throwaway sessions, SQLiteStorage keeps snapshots across restarts.
"""
import sqlite3
import logging
from pathlib import Path
from typing import Dict, List, Optional, Protocol
from contextlib import contextmanager

logger = logging.getLogger("cache.storage")


class Storage(Protocol):
    """
    Storage capability used by CacheStore.

    Implementations:
    - MemoryStorage: dict-backed, process lifetime only
    - SQLiteStorage: one row per key in a local SQLite file
    """

    def get(self, key: str) -> Optional[str]:
        """Return the stored string, or None if the key is absent."""
        ...

    def set(self, key: str, value: str) -> None:
        """Store a value. The write is all-or-nothing per key."""
        ...

    def remove(self, key: str) -> None:
        """Delete a key; missing keys are ignored."""
        ...


class MemoryStorage:
    """In-memory storage, mainly for tests."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data.keys())

    def __len__(self) -> int:
        return len(self._data)


SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class SQLiteStorage:
    """
    SQLite-based storage for persisted cache snapshots.

    Every set() is a single INSERT OR REPLACE committed in its own
    transaction, so readers see either the old or the new value.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()
        logger.debug(f"Cache storage ready at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    def get(self, key: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM cache_entries WHERE key = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        with self._get_connection() as conn:
            with conn:
                conn.execute(
                    "INSERT OR REPLACE INTO cache_entries (key, value) VALUES (?, ?)",
                    (key, value),
                )

    def remove(self, key: str) -> None:
        with self._get_connection() as conn:
            with conn:
                conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))

    def keys(self) -> List[str]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT key FROM cache_entries ORDER BY key").fetchall()
        return [row[0] for row in rows]
