"""Audit logger — PHI-free trail of sync, deletion, repair and key events.

Every entry records what happened, not the data it happened to:

* ``tool_input_hash`` — SHA-256 of canonical JSON (no raw readings in logs).
* ``backend``        — which remote backend was involved ('http' | 'document').
* ``record_count``   — how many measurements or envelopes were touched.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from glycosync.core.storage.database import DatabaseError, SyncDatabase

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Input hashing
# ---------------------------------------------------------------------------

def _hash_input(data: Any) -> str:
    """SHA-256 hash of canonical JSON — no readings stored in audit logs.

    Args:
        data: Tool input to hash. Must be JSON-serializable.

    Returns:
        Hex-encoded SHA-256 digest, or empty string on failure.
    """
    try:
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()
    except (TypeError, ValueError):
        return ""


# ---------------------------------------------------------------------------
# AuditEvent dataclass
# ---------------------------------------------------------------------------

@dataclass
class AuditEvent:
    """A single audit log entry."""

    action: str                          # 'tool_invocation' | 'sync' | 'data_delete' | 'repair' | 'key_rotation'
    tool_name: str = ""
    tool_input_hash: str = ""
    backend: str | None = None           # 'http' | 'document'
    record_count: int | None = None
    duration_ms: float | None = None
    status: str = "success"              # 'success' | 'error'
    error_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# AuditLogger
# ---------------------------------------------------------------------------

class AuditLogger:
    """Records audit events to the ``audit_log`` SQLite table.

    All writes are committed immediately. A failed write is logged and
    reported as an empty event id; auditing never breaks the operation
    being audited.

    Usage::

        audit = AuditLogger(sync_db)
        audit.log_sync(backend="document", status="success", downloaded=12)
    """

    def __init__(self, database: SyncDatabase) -> None:
        self._db = database

    # ---------------------------------------------------------------
    # Write
    # ---------------------------------------------------------------

    def log_event(self, event: AuditEvent) -> str:
        """Insert an audit event and return its UUID (empty string on failure)."""
        event_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()

        metadata_json = (
            json.dumps(event.metadata, separators=(",", ":"))
            if event.metadata
            else None
        )

        try:
            conn = self._db.connection
            conn.execute(
                """INSERT INTO audit_log
                   (id, timestamp, action, tool_name, tool_input_hash, backend,
                    record_count, duration_ms, status, error_type, metadata_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event_id,
                    now,
                    event.action,
                    event.tool_name or None,
                    event.tool_input_hash or None,
                    event.backend,
                    event.record_count,
                    event.duration_ms,
                    event.status,
                    event.error_type,
                    metadata_json,
                ),
            )
            conn.commit()
        except (sqlite3.Error, DatabaseError):
            logger.exception("Failed to write audit event — event lost")
            return ""

        return event_id

    def log_tool_call(
        self,
        tool_name: str,
        tool_input: Any = None,
        *,
        duration_ms: float | None = None,
        status: str = "success",
        error_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Log an MCP tool invocation. ``tool_input`` is hashed, never stored raw."""
        return self.log_event(AuditEvent(
            action="tool_invocation",
            tool_name=tool_name,
            tool_input_hash=_hash_input(tool_input) if tool_input else "",
            duration_ms=duration_ms,
            status=status,
            error_type=error_type,
            metadata=metadata or {},
        ))

    def log_sync(
        self,
        *,
        backend: str,
        status: str,
        uploaded: int = 0,
        downloaded: int = 0,
        duration_ms: float | None = None,
        error_type: str | None = None,
    ) -> str:
        """Log one reconciliation run."""
        return self.log_event(AuditEvent(
            action="sync",
            backend=backend,
            record_count=downloaded,
            duration_ms=duration_ms,
            status=status,
            error_type=error_type,
            metadata={"uploaded": uploaded, "downloaded": downloaded},
        ))

    def log_data_delete(
        self,
        *,
        tool_name: str = "",
        count: int = 0,
        backend: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Log a deletion of measurements or envelopes."""
        return self.log_event(AuditEvent(
            action="data_delete",
            tool_name=tool_name,
            backend=backend,
            record_count=count,
            metadata={**(metadata or {}), "records_deleted": count},
        ))

    def log_repair(
        self,
        *,
        operation: str,
        status: str = "success",
        found: int = 0,
        changed: int = 0,
        error_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Log a corruption analysis, cleanup or repair pass."""
        return self.log_event(AuditEvent(
            action="repair",
            tool_name=operation,
            backend="document",
            record_count=changed,
            status=status,
            error_type=error_type,
            metadata={**(metadata or {}), "found": found, "changed": changed},
        ))

    def log_key_rotation(self, *, old_hash: str, new_hash: str, version: int) -> str:
        """Log a key rotation by fingerprint only."""
        return self.log_event(AuditEvent(
            action="key_rotation",
            metadata={"old_key_hash": old_hash, "new_key_hash": new_hash, "version": version},
        ))

    # ---------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------

    def get_events(
        self,
        *,
        action: str | None = None,
        tool_name: str | None = None,
        since: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Query audit events with optional filters.

        Args:
            action: Filter by action type.
            tool_name: Filter by tool name.
            since: ISO 8601 timestamp lower bound.
            limit: Maximum events to return.

        Returns:
            List of event dicts, newest first.
        """
        conditions: list[str] = []
        params: list[Any] = []

        if action:
            conditions.append("action = ?")
            params.append(action)
        if tool_name:
            conditions.append("tool_name = ?")
            params.append(tool_name)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM audit_log{where} ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)

        rows = self._db.connection.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def count_events(self, *, action: str | None = None, since: str | None = None) -> int:
        """Count audit events, optionally by action and since a timestamp."""
        conditions: list[str] = []
        params: list[Any] = []
        if action:
            conditions.append("action = ?")
            params.append(action)
        if since:
            conditions.append("timestamp >= ?")
            params.append(since)
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        row = self._db.connection.execute(
            f"SELECT COUNT(*) FROM audit_log{where}", params
        ).fetchone()
        return row[0]
