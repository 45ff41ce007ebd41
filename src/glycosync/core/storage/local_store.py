"""Local measurement store — the on-device cache and offline source of truth.

Mutated only by direct user actions (add/delete) and by the SyncCoordinator's
full-replace reconciliation. Concurrent writers are last-write-wins.
"""

from __future__ import annotations

import logging
from typing import Any

from glycosync.core.storage.database import SyncDatabase
from glycosync.core.storage.models import Measurement

logger = logging.getLogger(__name__)


class LocalMeasurementStore:
    """CRUD over the ``measurements`` table.

    Usage::

        db = SyncDatabase(":memory:")
        db.initialize()
        store = LocalMeasurementStore(db)

        store.add(Measurement(id="m1", value=95, type="fasting", timestamp=ts))
        history = store.list_measurements()
    """

    def __init__(self, database: SyncDatabase) -> None:
        self._db = database

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(self, measurement: Measurement) -> Measurement:
        """Insert a measurement, replacing any existing record with the same id."""
        conn = self._db.connection
        with conn:
            self._upsert(conn, measurement)
        logger.debug("Stored measurement %s locally", measurement.id)
        return measurement

    def delete(self, measurement_id: str) -> bool:
        """Delete a measurement.

        Returns:
            True if a record was removed, False if the id was unknown.
        """
        conn = self._db.connection
        with conn:
            cursor = conn.execute("DELETE FROM measurements WHERE id = ?", (measurement_id,))
        return cursor.rowcount > 0

    def replace_all(self, measurements: list[Measurement]) -> int:
        """Overwrite the whole cache with ``measurements`` in one transaction.

        Returns:
            Number of records now stored.
        """
        conn = self._db.connection
        with conn:
            conn.execute("DELETE FROM measurements")
            for measurement in measurements:
                self._upsert(conn, measurement)
        logger.info("Local cache replaced with %d measurements", len(measurements))
        return len(measurements)

    def clear(self) -> int:
        conn = self._db.connection
        with conn:
            cursor = conn.execute("DELETE FROM measurements")
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, measurement_id: str) -> Measurement | None:
        row = self._db.connection.execute(
            "SELECT id, value, type, timestamp, notes FROM measurements WHERE id = ?",
            (measurement_id,),
        ).fetchone()
        return self._row_to_measurement(row) if row is not None else None

    def list_measurements(self, *, limit: int | None = None) -> list[Measurement]:
        """Return stored measurements, newest first."""
        query = "SELECT id, value, type, timestamp, notes FROM measurements ORDER BY timestamp DESC, id"
        params: list[Any] = []
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = self._db.connection.execute(query, params).fetchall()
        return [self._row_to_measurement(row) for row in rows]

    def count(self) -> int:
        row = self._db.connection.execute("SELECT COUNT(*) FROM measurements").fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _upsert(conn: Any, measurement: Measurement) -> None:
        conn.execute(
            """INSERT INTO measurements (id, value, type, timestamp, notes, updated_at)
               VALUES (?, ?, ?, ?, ?, datetime('now'))
               ON CONFLICT(id) DO UPDATE SET
                   value = excluded.value,
                   type = excluded.type,
                   timestamp = excluded.timestamp,
                   notes = excluded.notes,
                   updated_at = excluded.updated_at""",
            (
                measurement.id,
                measurement.value,
                measurement.type,
                measurement.timestamp,
                measurement.notes,
            ),
        )

    @staticmethod
    def _row_to_measurement(row: Any) -> Measurement:
        return Measurement(
            id=row["id"],
            value=row["value"],
            type=row["type"],
            timestamp=row["timestamp"],
            notes=row["notes"],
        )
