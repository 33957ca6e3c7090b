# src/taskdesk_sync/storage/kv_store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Fixed storage keys shared by the realtime layer.
QUEUE_KEY = "offline_message_queue"
LAST_FAILURE_KEY = "last_database_error"
OFFLINE_SINCE_KEY = "offline_since"
CLIENT_ID_KEY = "client_id"


class SqliteKeyValueStore:
    """
    SQLite key/value store for small JSON documents (local-storage equivalent).

    Every key carries a version that increments on each write. compare_and_set
    lets several processes share a key without losing each other's updates.

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "state.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        logger.info("KeyValueStore ready db=%s", self._db_path)

    @property
    def path(self) -> Path:
        return self._db_path

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    updated_at REAL NOT NULL
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _encode(value: Any) -> str:
        return json.dumps(value, ensure_ascii=False)

    @staticmethod
    def _decode(raw: str | None, key: str) -> Any:
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Stored value for %s is not valid JSON; treating as missing", key)
            return None

    # ---- public API ----

    def get(self, key: str, default: Any = None) -> Any:
        value, version = self.get_versioned(key)
        return default if version == 0 or value is None else value

    def get_versioned(self, key: str) -> tuple[Any, int]:
        """Return (value, version); a missing key is (None, 0)."""
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT value, version FROM kv WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        if row is None:
            return None, 0
        return self._decode(row["value"], key), int(row["version"])

    def set(self, key: str, value: Any) -> int:
        """Unconditional write. Returns the new version."""
        raw = self._encode(value)
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO kv(key, value, version, updated_at)
                VALUES (?, ?, 1, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    version = kv.version + 1,
                    updated_at = excluded.updated_at
                """,
                (key, raw, time.time()),
            )
            conn.commit()
            (version,) = conn.execute("SELECT version FROM kv WHERE key = ?", (key,)).fetchone()
            return int(version)
        finally:
            conn.close()

    def compare_and_set(self, key: str, value: Any, *, expected_version: int) -> bool:
        """
        Write only if the stored version still equals expected_version
        (0 means "key must not exist"). Returns True if the write happened;
        the new version is then expected_version + 1.
        """
        raw = self._encode(value)
        now = time.time()
        conn = self._get_conn()
        try:
            if expected_version == 0:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO kv(key, value, version, updated_at) VALUES (?, ?, 1, ?)",
                    (key, raw, now),
                )
            else:
                cur = conn.execute(
                    """
                    UPDATE kv
                    SET value = ?, version = version + 1, updated_at = ?
                    WHERE key = ? AND version = ?
                    """,
                    (raw, now, key, int(expected_version)),
                )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()
