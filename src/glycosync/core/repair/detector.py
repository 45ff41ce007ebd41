"""Corruption detection and repair for encrypted envelopes in the document backend.

Three passes, each scoped to one user's documents:

* ``analyze`` — structural check only, never writes.
* ``clean_corrupted_measurements`` — flag (reversible) or delete matches.
* ``scan_and_repair_corrupted_documents`` — try every known key, plus an
  optional candidate key, on flagged envelopes and restore what opens.

Remote failures are reported as ``status="error"`` rather than raised.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterable, Literal

from glycosync.core.audit.logger import AuditLogger
from glycosync.core.clock import now_ms
from glycosync.core.errors import GlycoSyncError, ValidationError
from glycosync.core.remote.documents import DocumentCollection, DocumentSnapshot
from glycosync.core.storage.encryption import (
    MIN_ENVELOPE_LENGTH,
    DecryptionError,
    EncryptionService,
    is_structurally_valid,
)
from glycosync.core.storage.models import CORRUPTED_MARKER, EncryptedEnvelope, Measurement

logger = logging.getLogger(__name__)

CleanupMode = Literal["flag", "delete"]


@dataclass
class AnalysisReport:
    status: str = "ok"
    total_documents: int = 0
    potentially_corrupted: int = 0
    corrupted_ids: list[str] = field(default_factory=list)
    already_flagged: int = 0
    error_type: str | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CleanupReport:
    mode: str
    status: str = "ok"
    total_documents: int = 0
    matched: int = 0
    flagged: int = 0
    deleted: int = 0
    already_flagged: int = 0
    affected_ids: list[str] = field(default_factory=list)
    error_type: str | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RepairReport:
    status: str = "ok"
    found: int = 0
    fixed: int = 0
    failed: int = 0
    fixed_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)
    candidate_key_retained: bool = False
    error_type: str | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CorruptionDetector:
    """Operator tooling over the raw envelope collection.

    Usage::

        detector = CorruptionDetector(collection, encryption)
        report = await detector.analyze("user-1")
        await detector.clean_corrupted_measurements("user-1", "flag")
        await detector.scan_and_repair_corrupted_documents("user-1", old_key)
    """

    def __init__(
        self,
        collection: DocumentCollection,
        encryption: EncryptionService,
        *,
        known_bad_ids: Iterable[str] = (),
        min_envelope_length: int = MIN_ENVELOPE_LENGTH,
        audit: AuditLogger | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._collection = collection
        self._encryption = encryption
        self._known_bad_ids = frozenset(known_bad_ids)
        self._min_length = min_envelope_length
        self._audit = audit
        self._clock = clock

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def analyze(self, user_id: str) -> AnalysisReport:
        """Count envelopes failing the structural check. Read-only."""
        try:
            docs = await self._collection.where_equal("userId", user_id)
        except GlycoSyncError as exc:
            logger.warning("Corruption analysis failed: %s", exc)
            self._audit_repair("analyze", "error", error_type=type(exc).__name__)
            return AnalysisReport(status="error", error_type=type(exc).__name__, message=str(exc))

        corrupted_ids = sorted(doc.id for doc in docs if not self._is_valid(doc))
        flagged = sum(1 for doc in docs if doc.data.get("isCorrupted") is True)
        logger.info(
            "Analyzed %d envelopes for %s: %d potentially corrupted",
            len(docs),
            user_id,
            len(corrupted_ids),
        )
        self._audit_repair("analyze", "success", found=len(corrupted_ids))
        return AnalysisReport(
            total_documents=len(docs),
            potentially_corrupted=len(corrupted_ids),
            corrupted_ids=corrupted_ids,
            already_flagged=flagged,
        )

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def clean_corrupted_measurements(
        self, user_id: str, mode: CleanupMode = "flag"
    ) -> CleanupReport:
        """Flag or delete envelopes that are known-bad or structurally invalid.

        Flagging moves the ciphertext to ``originalEncryptedData`` so it can
        still be repaired later; envelopes that are already flagged are left
        alone. Deleting is irreversible.
        """
        if mode not in ("flag", "delete"):
            return CleanupReport(
                mode=str(mode),
                status="error",
                error_type="ValidationError",
                message="mode must be 'flag' or 'delete'",
            )

        report = CleanupReport(mode=mode)
        try:
            docs = await self._collection.where_equal("userId", user_id)
            report.total_documents = len(docs)
            for doc in docs:
                if not self._matches_cleanup(doc):
                    continue
                is_flagged = doc.data.get("isCorrupted") is True
                if mode == "delete":
                    await self._collection.delete(doc.id)
                    report.deleted += 1
                elif is_flagged:
                    report.already_flagged += 1
                    continue
                else:
                    await self._collection.set(doc.id, self._flag_fields(doc), merge=True)
                    report.flagged += 1
                report.matched += 1
                report.affected_ids.append(doc.id)
        except GlycoSyncError as exc:
            logger.warning("Cleanup (%s) stopped after %d envelopes: %s", mode, report.matched, exc)
            report.status = "error"
            report.error_type = type(exc).__name__
            report.message = str(exc)

        if mode == "delete":
            logger.warning("Deleted %d corrupted envelopes for %s", report.deleted, user_id)
            if self._audit is not None and report.deleted:
                self._audit.log_data_delete(
                    tool_name="clean_corrupted_measurements",
                    count=report.deleted,
                    backend="document",
                )
        else:
            logger.info("Flagged %d corrupted envelopes for %s", report.flagged, user_id)
        self._audit_repair(
            f"clean_{mode}",
            report.status,
            found=report.matched,
            changed=report.deleted or report.flagged,
            error_type=report.error_type,
        )
        return report

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    async def scan_and_repair_corrupted_documents(
        self, user_id: str, candidate_legacy_key: str | None = None
    ) -> RepairReport:
        """Try to restore flagged envelopes from their preserved ciphertext.

        Keys are tried in order: current, legacy (most-recent-first), then
        ``candidate_legacy_key``. A candidate key that repairs at least one
        envelope is retained as a legacy key.
        """
        report = RepairReport()
        extra_keys = [candidate_legacy_key] if candidate_legacy_key else []
        candidate_used = False
        try:
            docs = await self._collection.where_equal("userId", user_id)
            flagged = [doc for doc in docs if doc.data.get("isCorrupted") is True]
            report.found = len(flagged)
            for doc in flagged:
                envelope = EncryptedEnvelope.from_document(doc.data)
                measurement, used_candidate = self._recover(envelope, extra_keys)
                if measurement is None:
                    await self._collection.set(
                        doc.id,
                        {
                            "repairAttempts": envelope.repair_attempts + 1,
                            "lastRepairAttemptAt": self._clock(),
                        },
                        merge=True,
                    )
                    report.failed += 1
                    report.failed_ids.append(doc.id)
                    continue

                repaired = EncryptedEnvelope(
                    user_id=envelope.user_id or user_id,
                    measurement_id=envelope.measurement_id or measurement.id,
                    encrypted_data=self._encryption.encrypt(measurement.to_dict()),
                    timestamp=measurement.timestamp,
                    last_modified=self._clock(),
                )
                await self._collection.set(doc.id, repaired.to_document(), merge=False)
                candidate_used = candidate_used or used_candidate
                report.fixed += 1
                report.fixed_ids.append(doc.id)
        except GlycoSyncError as exc:
            logger.warning("Repair pass stopped after %d fixes: %s", report.fixed, exc)
            report.status = "error"
            report.error_type = type(exc).__name__
            report.message = str(exc)

        if candidate_used and candidate_legacy_key:
            report.candidate_key_retained = self._encryption.add_legacy_key_candidate(
                candidate_legacy_key
            )

        logger.info(
            "Repair for %s: %d flagged, %d fixed, %d still unreadable",
            user_id,
            report.found,
            report.fixed,
            report.failed,
        )
        self._audit_repair(
            "repair",
            report.status,
            found=report.found,
            changed=report.fixed,
            error_type=report.error_type,
            metadata={"failed": report.failed, "candidate_key": bool(candidate_legacy_key)},
        )
        return report

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _is_valid(self, doc: DocumentSnapshot) -> bool:
        return is_structurally_valid(doc.data.get("encryptedData"), self._min_length)

    def _matches_cleanup(self, doc: DocumentSnapshot) -> bool:
        if doc.id in self._known_bad_ids:
            return True
        if doc.data.get("measurementId") in self._known_bad_ids:
            return True
        return not self._is_valid(doc)

    def _flag_fields(self, doc: DocumentSnapshot) -> dict[str, Any]:
        return {
            "originalEncryptedData": doc.data.get("encryptedData"),
            "encryptedData": CORRUPTED_MARKER,
            "isCorrupted": True,
            "corruptedAt": self._clock(),
        }

    def _recover(
        self, envelope: EncryptedEnvelope, extra_keys: list[str]
    ) -> tuple[Measurement | None, bool]:
        ciphertext = envelope.original_encrypted_data
        if ciphertext is None and envelope.encrypted_data != CORRUPTED_MARKER:
            ciphertext = envelope.encrypted_data
        try:
            result = self._encryption.try_decrypt_with_any_key(ciphertext, extra_keys)
            return Measurement.from_dict(result.data), result.used_extra_key is not None
        except (DecryptionError, ValidationError) as exc:
            logger.debug("Envelope %s not recoverable: %s", envelope.measurement_id, exc)
            return None, False

    def _audit_repair(
        self,
        operation: str,
        status: str,
        *,
        found: int = 0,
        changed: int = 0,
        error_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if self._audit is None:
            return
        self._audit.log_repair(
            operation=operation,
            status=status,
            found=found,
            changed=changed,
            error_type=error_type,
            metadata=metadata,
        )
