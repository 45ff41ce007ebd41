"""Data models for the sync layer."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from glycosync.core.errors import ValidationError

# Placeholder written into ``encryptedData`` when an envelope is flagged.
CORRUPTED_MARKER = "CORRUPTED_DATA_FLAGGED"


# SQLite INTEGER is a signed 64-bit value.
_INT64_LIMIT = 2**63


def _is_number(value: Any) -> bool:
    """Finite and storable. JSON parsers also yield NaN, Infinity and bignums."""
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return -_INT64_LIMIT < value < _INT64_LIMIT
    return isinstance(value, float) and math.isfinite(value) and abs(value) < _INT64_LIMIT


def _as_int(value: Any, default: int = 0) -> int:
    return int(value) if _is_number(value) else default


@dataclass
class Measurement:
    """A single glucose reading.

    ``value`` is validated against a physiological range at entry time
    (see ``glycosync.domains.glucose.validation``), never by storage.
    """

    id: str
    value: float
    type: str
    timestamp: int  # epoch ms
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "value": self.value,
            "type": self.type,
            "timestamp": self.timestamp,
        }
        if self.notes is not None:
            data["notes"] = self.notes
        return data

    @classmethod
    def from_dict(cls, data: Any) -> Measurement:
        """Parse a wire/storage dict, rejecting structurally invalid records.

        Raises:
            ValidationError: If a required field is missing or has the wrong type.
        """
        if not isinstance(data, dict):
            raise ValidationError(f"Measurement must be an object, got {type(data).__name__}")

        mid = data.get("id")
        if not isinstance(mid, str) or not mid:
            raise ValidationError("Measurement 'id' must be a non-empty string")

        value = data.get("value")
        if not _is_number(value):
            raise ValidationError(f"Measurement {mid}: 'value' must be a finite number")

        mtype = data.get("type")
        if not isinstance(mtype, str) or not mtype:
            raise ValidationError(f"Measurement {mid}: 'type' must be a non-empty string")

        ts = data.get("timestamp")
        if not _is_number(ts) or ts != int(ts):
            raise ValidationError(f"Measurement {mid}: 'timestamp' must be an integer (epoch ms)")

        notes = data.get("notes")
        if notes is not None and not isinstance(notes, str):
            raise ValidationError(f"Measurement {mid}: 'notes' must be a string")

        return cls(id=mid, value=float(value), type=mtype, timestamp=int(ts), notes=notes)


@dataclass
class EncryptedEnvelope:
    """Encrypted-at-rest representation of a measurement in the document backend.

    Document id is ``"{user_id}_{measurement_id}"``.
    """

    user_id: str
    measurement_id: str
    encrypted_data: Any
    timestamp: int
    last_modified: int = 0
    is_corrupted: bool = False
    original_encrypted_data: Any = None
    corrupted_at: int | None = None
    repair_attempts: int = 0

    @staticmethod
    def document_id(user_id: str, measurement_id: str) -> str:
        return f"{user_id}_{measurement_id}"

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "userId": self.user_id,
            "measurementId": self.measurement_id,
            "encryptedData": self.encrypted_data,
            "timestamp": self.timestamp,
            "lastModified": self.last_modified,
        }
        if self.is_corrupted:
            doc["isCorrupted"] = True
            doc["originalEncryptedData"] = self.original_encrypted_data
            doc["corruptedAt"] = self.corrupted_at
        if self.repair_attempts:
            doc["repairAttempts"] = self.repair_attempts
        return doc

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> EncryptedEnvelope:
        """Build from raw document fields; tolerant of missing fields."""
        corrupted_at = data.get("corruptedAt")
        return cls(
            user_id=data.get("userId", ""),
            measurement_id=data.get("measurementId", ""),
            encrypted_data=data.get("encryptedData"),
            timestamp=_as_int(data.get("timestamp")),
            last_modified=_as_int(data.get("lastModified")),
            is_corrupted=data.get("isCorrupted") is True,
            original_encrypted_data=data.get("originalEncryptedData"),
            corrupted_at=_as_int(corrupted_at) if corrupted_at is not None else None,
            repair_attempts=_as_int(data.get("repairAttempts")),
        )


@dataclass
class SyncMetadata:
    """Sync bookkeeping owned by the SyncCoordinator."""

    enabled: bool = False
    last_sync_time: int | None = None  # epoch ms
    pending_operations_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "last_sync_time": self.last_sync_time,
            "pending_operations_count": self.pending_operations_count,
        }


@dataclass
class KeyRecord:
    """Persisted encryption key state.

    ``legacy_keys`` is ordered most-recent-first. Superseded keys are kept
    (up to a cap) so envelopes written before a rotation stay readable.
    """

    key: str
    version: int = 1
    hash: str = ""
    legacy_keys: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "version": self.version,
            "hash": self.hash,
            "legacy_keys": list(self.legacy_keys),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KeyRecord:
        return cls(
            key=data["key"],
            version=int(data.get("version", 1)),
            hash=data.get("hash", ""),
            legacy_keys=list(data.get("legacy_keys", [])),
        )


@dataclass
class PendingOperation:
    """A local change that still has to be pushed to the remote store."""

    id: int
    op_type: str  # 'add' | 'delete'
    measurement_id: str
    created_at: int  # epoch ms
    attempts: int = 0
    next_attempt_at: int = 0
