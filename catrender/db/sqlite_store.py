"""
SQLite-backed key-value store.

One table, one row per key, whole-value replace in its own transaction.
"""

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import List, Optional

from catrender.db.kv_interface import KeyValueStore
from catrender.errors import StorageError, StorageQuotaExceeded

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key        TEXT PRIMARY KEY,
    value      BLOB NOT NULL,
    updated_at REAL NOT NULL
)
"""


def _is_quota_error(err: sqlite3.Error) -> bool:
    """SQLITE_FULL surfaces as OperationalError('database or disk is full')."""
    code = getattr(err, "sqlite_errorcode", None)
    if code is not None and code == getattr(sqlite3, "SQLITE_FULL", 13):
        return True
    return "disk is full" in str(err).lower()


class SQLiteKeyValueStore(KeyValueStore):
    """SQLite key-value store. Use ':memory:' for an ephemeral store."""

    def __init__(self, db_path: Optional[str] = None):
        """
        Args:
            db_path: Path to SQLite database file.
                     Default: <data_dir>/<storage.db_file> from config.
        """
        if db_path is None:
            from catrender.utils.config import get_config
            cfg = get_config()
            data_dir = cfg.data_dir()
            data_dir.mkdir(parents=True, exist_ok=True)
            db_path = str(data_dir / cfg.get("storage.db_file", "catrender.db"))

        self.db_path = str(db_path)
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._connect()

    def _connect(self):
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            if self.db_path != ":memory:":
                self.conn.execute("PRAGMA journal_mode = WAL")
                self.conn.execute("PRAGMA synchronous = FULL")
            self.conn.execute(_SCHEMA)
            self.conn.commit()
            logger.info(f"Connected to key-value store: {self.db_path}")
        except sqlite3.Error as e:
            logger.error(f"Failed to open key-value store {self.db_path}: {e}")
            raise StorageError(f"Cannot open key-value store: {e}") from e

    # ── KeyValueStore ───────────────────────────────────

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            try:
                row = self.conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
            except sqlite3.Error as e:
                raise StorageError(f"Read of '{key}' failed: {e}") from e
        if row is None:
            return None
        return bytes(row[0])

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            try:
                with self.conn:
                    self.conn.execute(
                        "INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?, ?, ?)",
                        (key, sqlite3.Binary(value), time.time()),
                    )
            except sqlite3.Error as e:
                if _is_quota_error(e):
                    logger.error(f"[KV] quota exceeded writing '{key}' ({len(value)} bytes)")
                    raise StorageQuotaExceeded(f"Out of space writing '{key}': {e}") from e
                raise StorageError(f"Write of '{key}' failed: {e}") from e

    def delete(self, key: str) -> None:
        with self._lock:
            try:
                with self.conn:
                    self.conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            except sqlite3.Error as e:
                raise StorageError(f"Delete of '{key}' failed: {e}") from e

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        return [r[0] for r in rows]

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None
