"""GlycoSync MCP Server — application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery
"""

from __future__ import annotations

import logging

from fastmcp import FastMCP

from glycosync.core.audit.logger import AuditLogger
from glycosync.core.config.settings import Settings, get_settings
from glycosync.core.remote.factory import RemoteBackend, create_remote_store
from glycosync.core.remote.session import AuthSession, SessionManager
from glycosync.core.repair.detector import CorruptionDetector
from glycosync.core.storage.database import SyncDatabase
from glycosync.core.storage.encryption import EncryptionService
from glycosync.core.storage.local_store import LocalMeasurementStore
from glycosync.core.storage.pending import PendingOperationQueue
from glycosync.core.storage.state import LocalStateStore
from glycosync.core.sync.coordinator import SyncCoordinator
from glycosync.core.sync.diagnostic import SyncDiagnostic
from glycosync.domains.glucose.tools.diagnostic_tools import register_diagnostic_tools
from glycosync.domains.glucose.tools.encryption_tools import register_encryption_tools
from glycosync.domains.glucose.tools.measurement_tools import register_measurement_tools
from glycosync.domains.glucose.tools.sync_tools import register_sync_tools

logger = logging.getLogger(__name__)

_VERSION = "0.1.0"


def create_app(
    *,
    settings_override: Settings | None = None,
    database_override: SyncDatabase | None = None,
    session_override: SessionManager | None = None,
    remote_backend_override: RemoteBackend | None = None,
) -> FastMCP:
    """Create and configure the GlycoSync MCP server.

    This is the main application factory. It:
    1. Opens the local SQLite store and loads (or creates) the encryption key
    2. Builds the remote backend selected by ``SYNC_BACKEND``
    3. Wires the sync coordinator and, for the document backend, the
       corruption tooling
    4. Registers all tools
    """
    settings = settings_override or get_settings()

    server = FastMCP(
        "GlycoSync",
        instructions=(
            "Local-first glucose log with optional encrypted remote sync. "
            "Record and list readings, control sync, and inspect or repair "
            "corrupted remote envelopes."
        ),
    )

    # --- Local store ---
    if database_override is not None:
        database = database_override
    else:
        database = SyncDatabase(settings.db_path)
    database.initialize()
    logger.info(
        "Local store ready: %s (schema v%d)", settings.db_path, database.get_schema_version()
    )

    state_store = LocalStateStore(database)
    local_store = LocalMeasurementStore(database)
    pending = PendingOperationQueue(database)
    audit_logger = AuditLogger(database)

    encryption = EncryptionService(state_store, legacy_key_limit=settings.legacy_key_limit)
    encryption.initialize_encryption_key()

    # --- Session ---
    session = session_override or SessionManager()
    if session_override is None and settings.sync_auth_token and settings.sync_user_id:
        session.set(AuthSession(user_id=settings.sync_user_id, token=settings.sync_auth_token))

    # --- Remote backend ---
    if remote_backend_override is not None:
        backend: RemoteBackend | None = remote_backend_override
    else:
        backend = create_remote_store(settings, session, encryption)

    coordinator = SyncCoordinator(
        local_store,
        state_store,
        pending,
        session,
        backend.store if backend is not None else None,
        audit=audit_logger,
    )

    # --- Register tools ---
    @server.tool
    def health_check() -> dict:
        """Check server health and return basic status information."""
        return {
            "status": "ok",
            "server": "GlycoSync",
            "version": _VERSION,
            "sync_backend": coordinator.backend_name or "none",
            "sync_state": coordinator.state.value,
            "measurements_stored": local_store.count(),
            "pending_operations": pending.count(),
            "encryption_key_version": encryption.key_record.version,
            "audit_events": audit_logger.count_events(),
        }

    register_measurement_tools(server, coordinator, audit_logger, unit=settings.glucose_unit)
    register_sync_tools(
        server, coordinator, session, backend.auth if backend is not None else None
    )
    register_encryption_tools(server, encryption, audit_logger)
    logger.info("Measurement, sync and encryption tools registered")

    # --- Corruption tooling (document backend only) ---
    detector: CorruptionDetector | None = None
    if backend is not None and backend.collection is not None:
        from glycosync.domains.glucose.tools.repair_tools import register_repair_tools

        detector = CorruptionDetector(
            backend.collection,
            encryption,
            known_bad_ids=settings.known_corrupted_doc_ids,
            min_envelope_length=settings.envelope_min_length,
            audit=audit_logger,
        )
        register_repair_tools(server, detector, session)
        logger.info("Corruption repair tools registered")

    register_diagnostic_tools(
        server, SyncDiagnostic(coordinator, pending, encryption, session, detector)
    )

    return server


# Module-level instance for FastMCP discovery ("server": "...app.py:mcp").
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
