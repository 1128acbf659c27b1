"""Durable JSON key/value storage for carts, order caches, ledgers and session identity."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SqliteStorage:
    """Key/value store backed by a single sqlite table.

    Every ``get`` reads the row from disk, so a writer always starts from the
    freshest persisted value rather than from a snapshot held elsewhere.
    """

    def __init__(self, path: str):
        self.path = path
        self.bootstrap_schema()

    def _connect(self) -> sqlite3.Connection:
        db_file = Path(self.path)
        db_file.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(db_file)

    def bootstrap_schema(self) -> None:
        """Create the kv table if it does not already exist."""
        with closing(self._connect()) as conn:
            with conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS kv (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )

    def get(self, key: str, default=None):
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            logger.error(f"[STORAGE] Unreadable value for {key}, ignoring it")
            return default

    def set(self, key: str, value) -> None:
        with closing(self._connect()) as conn:
            with conn:
                conn.execute(
                    """
                    INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                    """,
                    (key, json.dumps(value), _utc_now_iso()),
                )

    def remove(self, *keys: str) -> None:
        if not keys:
            return
        with closing(self._connect()) as conn:
            with conn:
                conn.executemany("DELETE FROM kv WHERE key = ?", [(k,) for k in keys])


class MemoryStorage:
    """In-process store with the same interface; values are JSON round-tripped."""

    def __init__(self, initial: dict | None = None):
        self._data: dict[str, str] = {}
        for key, value in (initial or {}).items():
            self.set(key, value)

    def get(self, key: str, default=None):
        raw = self._data.get(key)
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value) -> None:
        self._data[key] = json.dumps(value)

    def remove(self, *keys: str) -> None:
        for key in keys:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)
