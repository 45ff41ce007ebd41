"""Sync health diagnostic.

Combines coordinator state, the pending queue, a structural scan of the
remote envelopes (document backend) and an encryption self-test into one
report with a 0-100 health score, the issues found and what to do about
them. Read-only: nothing is repaired here.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from glycosync.core.clock import now_ms
from glycosync.core.storage.pending import MAX_QUEUE_SIZE
from glycosync.core.sync.coordinator import SyncState

if TYPE_CHECKING:
    from glycosync.core.remote.session import SessionManager
    from glycosync.core.repair.detector import CorruptionDetector
    from glycosync.core.storage.encryption import EncryptionService
    from glycosync.core.storage.pending import PendingOperationQueue
    from glycosync.core.sync.coordinator import SyncCoordinator

logger = logging.getLogger(__name__)

STALE_SYNC_MS = 24 * 60 * 60 * 1000

# Score deductions.
PENALTY_CRYPTO = 40
PENALTY_SYNC_ERROR = 20
PENALTY_SIGNED_OUT = 20
PENALTY_ANALYSIS_FAILED = 15
PENALTY_PENDING = 10
PENALTY_QUEUE_NEARLY_FULL = 10
PENALTY_STALE = 10
PENALTY_PER_CORRUPTED = 5
MAX_CORRUPTION_PENALTY = 30


@dataclass
class DiagnosticReport:
    health_score: int = 100
    status: str = "healthy"  # 'healthy' | 'degraded' | 'unhealthy'
    checks: dict[str, Any] = field(default_factory=dict)
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def penalize(self, points: int, issue: str, recommendation: str | None = None) -> None:
        self.health_score = max(0, self.health_score - points)
        self.issues.append(issue)
        if recommendation and recommendation not in self.recommendations:
            self.recommendations.append(recommendation)


def _status_for(score: int) -> str:
    if score >= 80:
        return "healthy"
    if score >= 50:
        return "degraded"
    return "unhealthy"


class SyncDiagnostic:
    """Usage::

        diagnostic = SyncDiagnostic(coordinator, pending, encryption, session, detector)
        report = await diagnostic.run_full_diagnostic()
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        pending: PendingOperationQueue,
        encryption: EncryptionService,
        session: SessionManager,
        detector: CorruptionDetector | None = None,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._coordinator = coordinator
        self._pending = pending
        self._encryption = encryption
        self._session = session
        self._detector = detector
        self._clock = clock

    async def run_full_diagnostic(self) -> DiagnosticReport:
        report = DiagnosticReport()
        self._check_encryption(report)
        self._check_sync(report)
        self._check_pending(report)
        await self._check_documents(report)

        report.status = _status_for(report.health_score)
        logger.info(
            "Diagnostic finished: score %d (%s), %d issues",
            report.health_score,
            report.status,
            len(report.issues),
        )
        return report

    def _check_encryption(self, report: DiagnosticReport) -> None:
        ok = self._encryption.test_crypto()
        record = self._encryption.key_record
        report.checks["encryption"] = {
            "round_trip": ok,
            "key_version": record.version,
            "key_hash": record.hash,
            "legacy_keys": len(record.legacy_keys),
        }
        if not ok:
            report.penalize(
                PENALTY_CRYPTO,
                "Encryption self-test failed",
                "Restore the key with restore_encryption_key or import_encryption_key.",
            )

    def _check_sync(self, report: DiagnosticReport) -> None:
        status = self._coordinator.get_status()
        report.checks["sync"] = status
        if self._coordinator.backend_name is None:
            report.recommendations.append(
                "No sync backend is configured; readings exist only on this device."
            )
            return
        if not status["enabled"]:
            report.recommendations.append("Enable sync to back up readings remotely.")
            return

        if not self._session.is_authenticated:
            report.penalize(
                PENALTY_SIGNED_OUT,
                "Sync is enabled but no session is signed in",
                "Sign in with sign_in.",
            )
        if self._coordinator.state is SyncState.ERROR:
            report.penalize(
                PENALTY_SYNC_ERROR,
                f"Last sync failed: {status['last_error']}",
                "Check connectivity and sign-in, then run sync_now.",
            )

        last_sync = status["last_sync_time"]
        if last_sync is None:
            report.penalize(
                PENALTY_STALE, "Sync is enabled but has never completed", "Run sync_now."
            )
        elif self._clock() - last_sync > STALE_SYNC_MS:
            report.penalize(
                PENALTY_STALE, "Last successful sync is more than a day old", "Run sync_now."
            )

    def _check_pending(self, report: DiagnosticReport) -> None:
        now = self._clock()
        operations = self._pending.list_operations()
        backing_off = [op for op in operations if op.next_attempt_at > now]
        report.checks["pending"] = {
            "total": len(operations),
            "due": len(operations) - len(backing_off),
            "backing_off": len(backing_off),
            "max_attempts": max((op.attempts for op in operations), default=0),
        }
        if not operations:
            return
        report.penalize(
            PENALTY_PENDING,
            f"{len(operations)} local changes are waiting to upload",
            "Run sync_now once the backend is reachable.",
        )
        if len(operations) >= MAX_QUEUE_SIZE * 0.8:
            report.penalize(
                PENALTY_QUEUE_NEARLY_FULL,
                "Pending queue is nearly full; the oldest changes will be dropped",
                "Restore connectivity and sync before adding more readings.",
            )

    async def _check_documents(self, report: DiagnosticReport) -> None:
        if self._detector is None:
            return
        current = self._session.current
        if current is None:
            report.checks["documents"] = {"skipped": "not signed in"}
            return

        analysis = await self._detector.analyze(current.user_id)
        report.checks["documents"] = analysis.to_dict()
        if analysis.status == "error":
            report.penalize(
                PENALTY_ANALYSIS_FAILED,
                f"Remote envelope scan failed ({analysis.error_type})",
                "Check connectivity and sign-in, then run sync_diagnostic again.",
            )
            return
        # Flagged envelopes fail the structural check too.
        unflagged = max(0, analysis.potentially_corrupted - analysis.already_flagged)
        if analysis.potentially_corrupted:
            report.penalize(
                min(MAX_CORRUPTION_PENALTY, PENALTY_PER_CORRUPTED * analysis.potentially_corrupted),
                f"{analysis.potentially_corrupted} remote envelopes are corrupted",
            )
        if unflagged:
            report.recommendations.append(
                "Run clean_corrupted_measurements with mode='flag', "
                "then repair_corrupted_documents."
            )
        if analysis.already_flagged:
            report.recommendations.append(
                f"{analysis.already_flagged} envelopes are flagged; run "
                "repair_corrupted_documents, with candidate_legacy_key if you have an old key."
            )
