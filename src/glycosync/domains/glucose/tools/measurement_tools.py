"""MCP tools for recording, listing and deleting glucose readings.

Readings are written to the local store first; when sync is enabled they
are mirrored to the remote backend, or queued for the next sync if that
fails.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from glycosync.core.errors import ValidationError
from glycosync.domains.glucose.validation import validate_measurement_input

if TYPE_CHECKING:
    from glycosync.core.audit.logger import AuditLogger
    from glycosync.core.sync.coordinator import SyncCoordinator

logger = logging.getLogger(__name__)


def register_measurement_tools(
    mcp: FastMCP,
    coordinator: SyncCoordinator,
    audit_logger: AuditLogger | None = None,
    *,
    unit: str = "mgdl",
) -> None:
    """Register measurement tools on the MCP server."""

    @mcp.tool
    async def add_measurement(
        ctx: Context,
        value: float,
        type: str,
        timestamp: int | None = None,
        notes: str | None = None,
        id: str | None = None,
    ) -> str:
        """Record a glucose reading.

        Args:
            value: Glucose value in the configured unit (mg/dL or mmol/L).
            type: One of 'fasting', 'before_meal', 'after_meal', 'bedtime', 'random'.
            timestamp: Epoch milliseconds of the reading. Defaults to now.
            notes: Optional free-text note.
            id: Optional id; re-using an id updates that reading.
        """
        start_time = time.monotonic()
        try:
            measurement = validate_measurement_input(
                {"id": id, "value": value, "type": type, "timestamp": timestamp, "notes": notes},
                unit=unit,
            )
        except ValidationError as exc:
            return json.dumps({"status": "error", "error_type": "ValidationError", "message": str(exc)})

        outcome = await coordinator.add_measurement(measurement)
        elapsed_ms = (time.monotonic() - start_time) * 1000
        if audit_logger is not None:
            audit_logger.log_tool_call(
                "add_measurement",
                {"id": measurement.id},
                duration_ms=round(elapsed_ms, 1),
                metadata={"remote": outcome["remote"]},
            )
        logger.info("Measurement %s saved (remote: %s)", measurement.id, outcome["remote"])
        return json.dumps({
            "status": "saved",
            "measurement": measurement.to_dict(),
            "remote": outcome["remote"],
            "unit": unit,
        })

    @mcp.tool
    async def list_measurements(
        ctx: Context,
        limit: int = 50,
    ) -> str:
        """List stored glucose readings, newest first.

        Args:
            limit: Maximum number of readings to return (default: 50).
        """
        if limit < 1:
            return json.dumps({"status": "error", "message": "limit must be at least 1."})
        measurements = coordinator.get_measurements(limit=limit)
        return json.dumps({
            "status": "ok",
            "count": len(measurements),
            "unit": unit,
            "measurements": [m.to_dict() for m in measurements],
        })

    @mcp.tool
    async def delete_measurement(
        ctx: Context,
        measurement_id: str,
    ) -> str:
        """Delete a glucose reading locally and, when sync is enabled, remotely.

        Deleting an id that does not exist succeeds with ``deleted: false``.

        Args:
            measurement_id: Id of the reading to delete.
        """
        outcome = await coordinator.delete_measurement(measurement_id)
        if audit_logger is not None:
            audit_logger.log_data_delete(
                tool_name="delete_measurement",
                count=1 if outcome["deleted"] else 0,
                backend=coordinator.backend_name,
                metadata={"remote": outcome["remote"]},
            )
        return json.dumps({
            "status": "deleted",
            "measurement_id": measurement_id,
            "deleted": outcome["deleted"],
            "remote": outcome["remote"],
        })
