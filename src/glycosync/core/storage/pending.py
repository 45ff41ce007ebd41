"""Queue of local changes waiting to be pushed to the remote store."""

from __future__ import annotations

import logging
from typing import Any

from glycosync.core.storage.database import SyncDatabase
from glycosync.core.storage.models import PendingOperation

logger = logging.getLogger(__name__)

MAX_QUEUE_SIZE = 500
BACKOFF_BASE_MS = 5_000
BACKOFF_MAX_MS = 10 * 60 * 1000


def backoff_delay_ms(attempts: int) -> int:
    """Exponential backoff: 5 s, 10 s, 20 s, ... capped at 10 minutes."""
    if attempts < 1:
        return 0
    return min(BACKOFF_BASE_MS * 2 ** (attempts - 1), BACKOFF_MAX_MS)


class PendingOperationQueue:
    """Persisted FIFO of ``add``/``delete`` operations.

    Operations for the same measurement collapse: enqueuing a new op drops any
    earlier op for that id, so only the latest intent is replayed.
    """

    def __init__(self, database: SyncDatabase, *, max_size: int = MAX_QUEUE_SIZE) -> None:
        self._db = database
        self._max_size = max_size

    def enqueue(self, op_type: str, measurement_id: str, now_ms: int) -> None:
        if op_type not in ("add", "delete"):
            raise ValueError(f"Unknown pending operation type: {op_type!r}")
        conn = self._db.connection
        with conn:
            conn.execute(
                "DELETE FROM pending_operations WHERE measurement_id = ?", (measurement_id,)
            )
            conn.execute(
                """INSERT INTO pending_operations
                   (op_type, measurement_id, created_at, attempts, next_attempt_at)
                   VALUES (?, ?, ?, 0, ?)""",
                (op_type, measurement_id, now_ms, now_ms),
            )
            overflow = self._count(conn) - self._max_size
            if overflow > 0:
                conn.execute(
                    """DELETE FROM pending_operations WHERE id IN (
                           SELECT id FROM pending_operations ORDER BY id LIMIT ?)""",
                    (overflow,),
                )
                logger.warning("Pending queue full; dropped %d oldest operations", overflow)

    def list_operations(self) -> list[PendingOperation]:
        """All queued operations, oldest first."""
        rows = self._db.connection.execute(
            "SELECT * FROM pending_operations ORDER BY created_at, id"
        ).fetchall()
        return [self._row_to_op(row) for row in rows]

    def due(self, now_ms: int) -> list[PendingOperation]:
        """Operations whose backoff window has elapsed, oldest first."""
        rows = self._db.connection.execute(
            """SELECT * FROM pending_operations WHERE next_attempt_at <= ?
               ORDER BY created_at, id""",
            (now_ms,),
        ).fetchall()
        return [self._row_to_op(row) for row in rows]

    def complete(self, op_id: int) -> None:
        conn = self._db.connection
        with conn:
            conn.execute("DELETE FROM pending_operations WHERE id = ?", (op_id,))

    def record_failure(self, op: PendingOperation, now_ms: int) -> None:
        attempts = op.attempts + 1
        conn = self._db.connection
        with conn:
            conn.execute(
                "UPDATE pending_operations SET attempts = ?, next_attempt_at = ? WHERE id = ?",
                (attempts, now_ms + backoff_delay_ms(attempts), op.id),
            )

    def pending_deletes(self) -> set[str]:
        rows = self._db.connection.execute(
            "SELECT measurement_id FROM pending_operations WHERE op_type = 'delete'"
        ).fetchall()
        return {row[0] for row in rows}

    def count(self) -> int:
        return self._count(self._db.connection)

    def clear(self) -> None:
        conn = self._db.connection
        with conn:
            conn.execute("DELETE FROM pending_operations")

    @staticmethod
    def _count(conn: Any) -> int:
        return conn.execute("SELECT COUNT(*) FROM pending_operations").fetchone()[0]

    @staticmethod
    def _row_to_op(row: Any) -> PendingOperation:
        return PendingOperation(
            id=row["id"],
            op_type=row["op_type"],
            measurement_id=row["measurement_id"],
            created_at=row["created_at"],
            attempts=row["attempts"],
            next_attempt_at=row["next_attempt_at"],
        )
