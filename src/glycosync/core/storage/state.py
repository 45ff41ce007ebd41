"""Persisted key/value state (sync flag, last sync time, key record)."""

from __future__ import annotations

import json
import logging
from typing import Any

from glycosync.core.storage.database import SyncDatabase

logger = logging.getLogger(__name__)

SYNC_ENABLED_KEY = "sync.enabled"
LAST_SYNC_KEY = "sync.last_sync_time"
KEY_RECORD_KEY = "crypto.key_record"


class LocalStateStore:
    """JSON values keyed by logical name in the ``local_state`` table.

    :meth:`set_many` writes every key in a single transaction, which is
    what key rotation relies on to never persist a half-rotated record.
    """

    def __init__(self, database: SyncDatabase) -> None:
        self._db = database

    def get(self, key: str, default: Any = None) -> Any:
        row = self._db.connection.execute(
            "SELECT value_json FROM local_state WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except (json.JSONDecodeError, TypeError):
            logger.warning("Unreadable local state value for %s; using default", key)
            return default

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, values: dict[str, Any]) -> None:
        """Persist several keys atomically."""
        conn = self._db.connection
        with conn:
            for key, value in values.items():
                conn.execute(
                    """INSERT INTO local_state (key, value_json, updated_at)
                       VALUES (?, ?, datetime('now'))
                       ON CONFLICT(key) DO UPDATE SET
                           value_json = excluded.value_json,
                           updated_at = excluded.updated_at""",
                    (key, json.dumps(value, separators=(",", ":"))),
                )

    def delete(self, key: str) -> None:
        conn = self._db.connection
        with conn:
            conn.execute("DELETE FROM local_state WHERE key = ?", (key,))
