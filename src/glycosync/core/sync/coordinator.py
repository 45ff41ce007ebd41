"""Sync coordinator — reconciles the local store with the remote backend.

State machine::

    disabled --enable(session)--> idle --sync_now--> syncing --ok--> idle
                                                         \\--fail--> error
    any --disable--> disabled

Reconciliation is full-replace: replay queued operations, fetch the remote
set, merge by id, upload local-only records and overwrite the local cache
with the merged result.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable

from glycosync.core.audit.logger import AuditLogger
from glycosync.core.clock import now_ms
from glycosync.core.errors import (
    AuthenticationError,
    AuthRequiredError,
    GlycoSyncError,
    ValidationError,
)
from glycosync.core.remote import RemoteMeasurementStore
from glycosync.core.remote.session import SessionManager
from glycosync.core.storage.database import DatabaseError
from glycosync.core.storage.local_store import LocalMeasurementStore
from glycosync.core.storage.models import Measurement, PendingOperation, SyncMetadata
from glycosync.core.storage.pending import PendingOperationQueue
from glycosync.core.storage.state import LAST_SYNC_KEY, SYNC_ENABLED_KEY, LocalStateStore

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    DISABLED = "disabled"
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


@dataclass
class SyncResult:
    """Outcome of one sync attempt; never raised, always returned."""

    status: str  # 'success' | 'error' | 'skipped'
    state: SyncState
    uploaded: int = 0
    downloaded: int = 0
    merged: int = 0
    skipped: int = 0
    replayed: int = 0
    error_type: str | None = None
    message: str = ""
    last_sync_time: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class SyncCoordinator:
    """Owns sync state and mediates every write that may need mirroring.

    Usage::

        coordinator = SyncCoordinator(local, state, pending, session, remote)
        await coordinator.set_sync_enabled(True)   # idle, then an immediate sync
        result = await coordinator.sync_now()
    """

    def __init__(
        self,
        local_store: LocalMeasurementStore,
        state_store: LocalStateStore,
        pending: PendingOperationQueue,
        session: SessionManager,
        remote: RemoteMeasurementStore | None = None,
        *,
        audit: AuditLogger | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._local = local_store
        self._state_store = state_store
        self._pending = pending
        self._session = session
        self._remote = remote
        self._audit = audit
        self._clock = clock
        self._inflight: asyncio.Task[SyncResult] | None = None
        self._last_error: str | None = None

        enabled = bool(state_store.get(SYNC_ENABLED_KEY, False)) and remote is not None
        self._state = SyncState.IDLE if enabled else SyncState.DISABLED

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def enabled(self) -> bool:
        return self._state is not SyncState.DISABLED

    @property
    def last_sync_time(self) -> int | None:
        return self._state_store.get(LAST_SYNC_KEY)

    @property
    def backend_name(self) -> str | None:
        return self._remote.backend_name if self._remote is not None else None

    def get_status(self) -> dict[str, Any]:
        metadata = SyncMetadata(
            enabled=self.enabled,
            last_sync_time=self.last_sync_time,
            pending_operations_count=self._pending.count(),
        )
        return {
            **metadata.to_dict(),
            "state": self._state.value,
            "backend": self.backend_name,
            "authenticated": self._session.is_authenticated,
            "last_error": self._last_error,
        }

    async def set_sync_enabled(self, enabled: bool) -> SyncResult:
        """Enable (and immediately sync) or disable remote sync.

        Raises:
            AuthRequiredError: Enabling without an authenticated session.
            GlycoSyncError: Enabling when no remote backend is configured.
        """
        if not enabled:
            self._state_store.set(SYNC_ENABLED_KEY, False)
            self._state = SyncState.DISABLED
            logger.info("Sync disabled")
            return self._skipped("Sync disabled")

        if self._remote is None:
            raise GlycoSyncError("No remote sync backend is configured")
        if not self._session.is_authenticated:
            raise AuthRequiredError("Sign in before enabling sync")

        self._state_store.set(SYNC_ENABLED_KEY, True)
        if self._state is SyncState.DISABLED:
            self._state = SyncState.IDLE
        logger.info("Sync enabled (backend %s)", self.backend_name)
        return await self.sync_now()

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_now(self) -> SyncResult:
        """Run one reconciliation.

        A call made while another sync is in flight waits for and returns
        that sync's result instead of starting a second one.
        """
        if self._state is SyncState.DISABLED:
            return self._skipped("Sync is disabled")

        if self._inflight is not None and not self._inflight.done():
            logger.debug("Sync already in flight; joining it")
            return await self._inflight

        task = asyncio.ensure_future(self._run_sync())
        self._inflight = task
        try:
            return await task
        finally:
            if self._inflight is task:
                self._inflight = None

    def _require_remote(self) -> RemoteMeasurementStore:
        if self._remote is None:
            raise GlycoSyncError("No remote sync backend is configured")
        return self._remote

    def _settle(self, state: SyncState) -> None:
        # A disable issued while the sync was running wins.
        if self._state is SyncState.SYNCING:
            self._state = state

    async def _run_sync(self) -> SyncResult:
        remote = self._require_remote()
        self._state = SyncState.SYNCING
        start_time = time.monotonic()

        try:
            self._session.require()
            replayed = await self._replay_pending()
            remote_items = await remote.get_measurements()
            counts = await self._reconcile(remote_items)
        except (GlycoSyncError, DatabaseError, sqlite3.Error) as exc:
            logger.warning("Sync failed (%s): %s", type(exc).__name__, exc)
            return self._sync_failed(remote, exc, start_time)
        except Exception as exc:
            logger.exception("Unexpected error during sync")
            return self._sync_failed(remote, exc, start_time)

        finished_at = self._clock()
        self._state_store.set(LAST_SYNC_KEY, finished_at)
        self._settle(SyncState.IDLE)
        self._last_error = None
        elapsed_ms = (time.monotonic() - start_time) * 1000

        skipped = counts["skipped"] + len(getattr(remote, "skipped_document_ids", []))
        logger.info(
            "Sync complete: %d downloaded, %d uploaded, %d replayed, %d skipped",
            counts["downloaded"],
            counts["uploaded"],
            replayed,
            skipped,
        )
        if self._audit is not None:
            self._audit.log_sync(
                backend=remote.backend_name,
                status="success",
                uploaded=counts["uploaded"],
                downloaded=counts["downloaded"],
                duration_ms=round(elapsed_ms, 1),
            )
        return SyncResult(
            status="success",
            state=self._state,
            uploaded=counts["uploaded"],
            downloaded=counts["downloaded"],
            merged=counts["merged"],
            skipped=skipped,
            replayed=replayed,
            last_sync_time=finished_at,
        )

    def _sync_failed(
        self, remote: RemoteMeasurementStore, exc: Exception, start_time: float
    ) -> SyncResult:
        self._settle(SyncState.ERROR)
        self._last_error = str(exc)
        elapsed_ms = (time.monotonic() - start_time) * 1000
        if self._audit is not None:
            self._audit.log_sync(
                backend=remote.backend_name,
                status="error",
                duration_ms=round(elapsed_ms, 1),
                error_type=type(exc).__name__,
            )
        return SyncResult(
            status="error",
            state=self._state,
            error_type=type(exc).__name__,
            message=str(exc),
            last_sync_time=self.last_sync_time,
        )

    async def _replay_pending(self) -> int:
        """Push queued operations whose backoff has elapsed.

        Authentication failures abort the sync; other failures back off.
        """
        now = self._clock()
        replayed = 0
        for op in self._pending.due(now):
            try:
                await self._apply_remote(op)
            except AuthenticationError:
                raise
            except ValidationError as exc:
                logger.warning("Dropping pending %s for %s: %s", op.op_type, op.measurement_id, exc)
                self._pending.complete(op.id)
                continue
            except GlycoSyncError as exc:
                logger.info("Pending %s for %s failed again: %s", op.op_type, op.measurement_id, exc)
                self._pending.record_failure(op, now)
                continue
            self._pending.complete(op.id)
            replayed += 1
        return replayed

    async def _apply_remote(self, op: PendingOperation) -> None:
        remote = self._require_remote()
        if op.op_type == "delete":
            await remote.delete_measurement(op.measurement_id)
            return
        measurement = self._local.get(op.measurement_id)
        if measurement is not None:
            await remote.add_measurement(measurement)

    async def _reconcile(self, remote_items: list[Measurement]) -> dict[str, int]:
        pending_deletes = self._pending.pending_deletes()
        local_items = {m.id: m for m in self._local.list_measurements()}
        remote_map = {m.id: m for m in remote_items if m.id not in pending_deletes}

        merged: dict[str, Measurement] = dict(remote_map)
        uploaded = 0
        conflicts = 0
        for mid, local_m in local_items.items():
            if mid in pending_deletes:
                continue
            remote_m = remote_map.get(mid)
            if remote_m is not None:
                if local_m == remote_m:
                    continue
                conflicts += 1
                # Ties go to the remote copy.
                if local_m.timestamp <= remote_m.timestamp:
                    continue
            merged[mid] = local_m
            if await self._push_or_queue(local_m):
                uploaded += 1

        self._local.replace_all(list(merged.values()))
        return {
            "downloaded": len(remote_map),
            "uploaded": uploaded,
            "merged": len(merged),
            "conflicts": conflicts,
            "skipped": len(remote_items) - len(remote_map),
        }

    async def _push_or_queue(self, measurement: Measurement) -> bool:
        try:
            await self._require_remote().add_measurement(measurement)
        except AuthenticationError:
            raise
        except GlycoSyncError as exc:
            logger.info("Upload of %s deferred: %s", measurement.id, exc)
            self._pending.enqueue("add", measurement.id, self._clock())
            return False
        return True

    # ------------------------------------------------------------------
    # Direct user actions
    # ------------------------------------------------------------------

    def get_measurements(self, *, limit: int | None = None) -> list[Measurement]:
        return self._local.list_measurements(limit=limit)

    async def add_measurement(self, measurement: Measurement) -> dict[str, Any]:
        """Save locally, then mirror remotely when sync is enabled."""
        self._local.add(measurement)
        return {"measurement": measurement, "remote": await self._mirror("add", measurement)}

    async def delete_measurement(self, measurement_id: str) -> dict[str, Any]:
        """Delete locally, then remotely when sync is enabled.

        Deleting an id that does not exist locally is not an error.
        """
        existed = self._local.delete(measurement_id)
        return {"deleted": existed, "remote": await self._mirror("delete", measurement_id)}

    async def _mirror(self, op_type: str, target: Measurement | str) -> str:
        """Returns 'local_only', 'synced' or 'queued'."""
        if self._state is SyncState.DISABLED or self._remote is None:
            return "local_only"

        mid = target.id if isinstance(target, Measurement) else target
        if self._session.is_authenticated:
            try:
                if isinstance(target, Measurement):
                    await self._remote.add_measurement(target)
                else:
                    await self._remote.delete_measurement(target)
                return "synced"
            except GlycoSyncError as exc:
                logger.info("Remote %s of %s failed, queued: %s", op_type, mid, exc)

        self._pending.enqueue(op_type, mid, self._clock())
        return "queued"

    def _skipped(self, message: str) -> SyncResult:
        return SyncResult(
            status="skipped",
            state=self._state,
            message=message,
            last_sync_time=self.last_sync_time,
        )
