"""Persisted state for the sync client.

This module provides:
- StateStore: the load/save/delete contract used by the index, the change
  tracker, the orchestrator and the token manager
- SqliteStateStore: SQLite-backed key/value implementation

Architecture:
    Every piece of state that outlives a pass (index document, change
    cursor, orchestrator flags, OAuth tokens) is an opaque text blob stored
    under its own key. Writes are synchronous and autocommitted, so a crash
    never loses an acknowledged mutation.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class StateStore(Protocol):
    """Key/value store for opaque state blobs."""

    def load(self, key: str) -> str | None: ...

    def save(self, key: str, blob: str) -> None: ...

    def delete(self, key: str) -> None: ...


class SqliteStateStore:
    """SQLite-based key/value state store.

    Thread-safe: a single connection is shared behind a re-entrant lock.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the state database.

        Args:
            db_path: Path to SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        # WAL keeps readers unblocked while a save is in progress
        self._conn.execute("PRAGMA journal_mode=WAL")

        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS sync_state (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> SqliteStateStore:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def load(self, key: str) -> str | None:
        """Get a state value."""
        with self._lock:
            cursor = self._conn.execute(
                "SELECT value FROM sync_state WHERE key = ?",
                (key,),
            )
            row = cursor.fetchone()
        return row["value"] if row else None

    def save(self, key: str, blob: str) -> None:
        """Set a state value."""
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO sync_state (key, value) VALUES (?, ?)",
                (key, blob),
            )

    def delete(self, key: str) -> None:
        """Remove a state value (no-op when absent)."""
        with self._lock:
            self._conn.execute("DELETE FROM sync_state WHERE key = ?", (key,))

    def keys(self) -> list[str]:
        """List stored keys."""
        with self._lock:
            cursor = self._conn.execute("SELECT key FROM sync_state ORDER BY key")
            return [row["key"] for row in cursor.fetchall()]


def load_json(store: StateStore, key: str) -> dict[str, Any] | None:
    """Load a JSON object stored under key.

    Unparseable or non-object values are logged and treated as absent.
    """
    blob = store.load(key)
    if blob is None:
        return None
    try:
        data = json.loads(blob)
    except json.JSONDecodeError as e:
        logger.warning(f"Discarding unreadable state '{key}': {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Discarding state '{key}': expected an object")
        return None
    return data


def save_json(store: StateStore, key: str, data: dict[str, Any]) -> None:
    """Store a JSON object under key."""
    store.save(key, json.dumps(data, sort_keys=True))
