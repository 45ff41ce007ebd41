"""Entry-time validation for glucose readings.

Physiological ranges are checked here, when a reading is entered, and never
by storage or sync: a remote record that parses is kept even if a stricter
range would reject it today.
"""

from __future__ import annotations

import re
import uuid
from typing import Any

from glycosync.core.clock import now_ms
from glycosync.core.errors import ValidationError
from glycosync.core.storage.models import Measurement

MEASUREMENT_TYPES = ("fasting", "before_meal", "after_meal", "bedtime", "random")

# Plausible meter range per unit (inclusive).
VALUE_RANGES: dict[str, tuple[float, float]] = {
    "mgdl": (20.0, 600.0),
    "mmoll": (1.1, 33.3),
}

MAX_FUTURE_SKEW_MS = 24 * 60 * 60 * 1000
MAX_NOTES_LENGTH = 500

_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,50}$")


def new_measurement_id() -> str:
    return uuid.uuid4().hex


def validate_measurement_input(
    data: dict[str, Any],
    *,
    unit: str = "mgdl",
    at_ms: int | None = None,
) -> Measurement:
    """Validate raw user input and build a Measurement.

    Missing ``id`` gets a fresh one; missing ``timestamp`` means now.

    Raises:
        ValidationError: With a message naming the first offending field.
    """
    if unit not in VALUE_RANGES:
        raise ValidationError(f"Unknown glucose unit {unit!r}")
    now = at_ms if at_ms is not None else now_ms()

    mid = data.get("id") or new_measurement_id()
    if not isinstance(mid, str) or not _ID_PATTERN.match(mid):
        raise ValidationError("id must be 1-50 characters of letters, digits, '_' or '-'")

    value = data.get("value")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("value must be a number")
    low, high = VALUE_RANGES[unit]
    if not low <= value <= high:
        raise ValidationError(f"value {value} is outside the plausible range {low}-{high} ({unit})")

    mtype = data.get("type")
    if mtype not in MEASUREMENT_TYPES:
        raise ValidationError(f"type must be one of: {', '.join(MEASUREMENT_TYPES)}")

    timestamp = data.get("timestamp")
    if timestamp is None:
        timestamp = now
    if isinstance(timestamp, bool) or not isinstance(timestamp, int) or timestamp <= 0:
        raise ValidationError("timestamp must be a positive integer (epoch ms)")
    if timestamp > now + MAX_FUTURE_SKEW_MS:
        raise ValidationError("timestamp is more than one day in the future")

    notes = data.get("notes")
    if notes is not None:
        if not isinstance(notes, str):
            raise ValidationError("notes must be a string")
        if len(notes) > MAX_NOTES_LENGTH:
            raise ValidationError(f"notes must be at most {MAX_NOTES_LENGTH} characters")
        notes = notes.strip() or None

    return Measurement(id=mid, value=float(value), type=mtype, timestamp=timestamp, notes=notes)
