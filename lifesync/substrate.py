"""
Key/value substrates.

The substrate is the persistent string key/value store everything else is
built on: blob records, item/category snapshots and sync metadata all live
here under their own key prefixes. It has a finite byte capacity, like a
browser's local storage, and refuses writes that would exceed it.

Usage is counted as two bytes per character of key and value (UTF-16 code
units), which is how browser stores account for quota.
"""

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .errors import QuotaExceededError

logger = logging.getLogger(__name__)


def entry_bytes(key: str, value: str) -> int:
    """Approximate stored size of one key/value pair."""
    return 2 * (len(key) + len(value))


class SqliteSubstrate:
    """
    SQLite-backed key/value substrate.

    A single ``kv`` table keyed by string. WAL mode and a busy timeout let
    a CLI process and an application process share the same file.
    """

    def __init__(self, db_path: Path, capacity_bytes: Optional[int] = None):
        """
        Args:
            db_path: Path to SQLite database file
            capacity_bytes: Hard byte capacity (None for unbounded)
        """
        self._db_path = Path(db_path)
        self.capacity_bytes = capacity_bytes
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrent access across processes
        self._conn.execute("PRAGMA journal_mode=WAL")
        # Wait up to 5 seconds for locks instead of failing immediately
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.commit()

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get_string(self, key: str) -> Optional[str]:
        cursor = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,))
        row = cursor.fetchone()
        return row["value"] if row is not None else None

    def list_keys(self, prefix: str = "") -> list[str]:
        """
        List keys starting with prefix, in key order.

        Uses a range scan rather than LIKE so prefixes containing
        ``%`` or ``_`` match literally.
        """
        if not prefix:
            cursor = self._conn.execute("SELECT key FROM kv ORDER BY key")
        else:
            cursor = self._conn.execute(
                "SELECT key FROM kv WHERE key >= ? AND key < ? ORDER BY key",
                (prefix, prefix + "\U0010ffff"),
            )
        return [row["key"] for row in cursor]

    def approximate_total_bytes(self) -> int:
        cursor = self._conn.execute(
            "SELECT COALESCE(SUM(LENGTH(key) + LENGTH(value)), 0) FROM kv"
        )
        return 2 * cursor.fetchone()[0]

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def set_string(self, key: str, value: str) -> None:
        """
        Store a value, replacing any existing one.

        Raises:
            QuotaExceededError: If the write would exceed capacity_bytes
        """
        with self._lock:
            if self.capacity_bytes is not None:
                old = self.get_string(key)
                old_size = entry_bytes(key, old) if old is not None else 0
                new_size = entry_bytes(key, value)
                used = self.approximate_total_bytes()
                if used - old_size + new_size > self.capacity_bytes:
                    raise QuotaExceededError(
                        key, new_size, max(0, self.capacity_bytes - used + old_size)
                    )
            self._conn.execute(
                "INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?, ?, ?)",
                (key, value, self._now()),
            )
            self._conn.commit()

    def remove_key(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            self._conn.commit()
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class MemorySubstrate:
    """Dict-backed substrate for development and testing."""

    def __init__(self, capacity_bytes: Optional[int] = None):
        self.capacity_bytes = capacity_bytes
        self._data: dict[str, str] = {}
        self._used = 0
        self._lock = threading.Lock()

    def get_string(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_string(self, key: str, value: str) -> None:
        with self._lock:
            old = self._data.get(key)
            old_size = entry_bytes(key, old) if old is not None else 0
            new_size = entry_bytes(key, value)
            if (
                self.capacity_bytes is not None
                and self._used - old_size + new_size > self.capacity_bytes
            ):
                raise QuotaExceededError(
                    key, new_size, max(0, self.capacity_bytes - self._used + old_size)
                )
            self._data[key] = value
            self._used += new_size - old_size

    def remove_key(self, key: str) -> bool:
        with self._lock:
            old = self._data.pop(key, None)
            if old is None:
                return False
            self._used -= entry_bytes(key, old)
            return True

    def list_keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))

    def approximate_total_bytes(self) -> int:
        return self._used

    def close(self) -> None:
        pass
