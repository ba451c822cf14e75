"""Durable key/value credential store with SQLite backend."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Iterable, Mapping

from sparecompute.config import DEFAULT_DB_PATH

logger = logging.getLogger(__name__)

# Well-known keys
PLUGIN_ID = "pluginId"
CONNECTION_TOKEN = "connectionToken"
CAPABILITY = "capability"
PRICING = "pricing"

IDENTITY_KEYS = (PLUGIN_ID, CONNECTION_TOKEN)


class CredentialStore:
    """Opaque JSON values keyed by name, persisted in SQLite.

    Missing keys are never an error: readers get ``None`` (or their default)
    and treat the agent as not yet registered.
    """

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self._lock = threading.Lock()

        # Ensure parent directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)
            conn.commit()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def get(self, key: str, default: Any = None) -> Any:
        """Return the decoded value for key, or default when absent."""
        return self.get_many([key]).get(key, default)

    def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        """Return the stored values for the given keys.

        Keys that are absent, or whose value cannot be decoded, are left out
        of the result.
        """
        keys = list(keys)
        if not keys:
            return {}

        placeholders = ", ".join("?" for _ in keys)
        with self._lock:
            with self._get_connection() as conn:
                rows = conn.execute(
                    f"SELECT key, value_json FROM settings WHERE key IN ({placeholders})",
                    keys,
                ).fetchall()

        values: dict[str, Any] = {}
        for row in rows:
            try:
                values[row["key"]] = json.loads(row["value_json"])
            except json.JSONDecodeError:
                logger.warning(f"Ignoring undecodable value for key {row['key']!r}")
        return values

    def set_many(self, values: Mapping[str, Any]) -> None:
        """Upsert several keys at once."""
        now = int(time.time())
        rows = [(key, json.dumps(value), now) for key, value in values.items()]

        with self._lock:
            with self._get_connection() as conn:
                conn.executemany(
                    """
                    INSERT INTO settings (key, value_json, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value_json = excluded.value_json,
                        updated_at = excluded.updated_at
                    """,
                    rows,
                )
                conn.commit()

        logger.debug(f"Stored keys: {sorted(values)}")

    def delete(self, *keys: str) -> None:
        """Remove keys from the store. Unknown keys are ignored."""
        if not keys:
            return
        with self._lock:
            with self._get_connection() as conn:
                conn.executemany(
                    "DELETE FROM settings WHERE key = ?",
                    [(key,) for key in keys],
                )
                conn.commit()

    def delete_identity(self) -> None:
        """Forget the broker-issued plugin identity."""
        self.delete(*IDENTITY_KEYS)
        logger.info("Stored plugin identity removed")

    def clear(self) -> None:
        """Remove every stored key."""
        with self._lock:
            with self._get_connection() as conn:
                conn.execute("DELETE FROM settings")
                conn.commit()

        logger.info("Credential store cleared")
