"""Error taxonomy shared by the sync layer.

Components catch these at their boundary (SyncCoordinator, CorruptionDetector,
MCP tools) and turn them into status objects; nothing here is meant to reach
the user as an uncaught exception.
"""

from __future__ import annotations


class GlycoSyncError(Exception):
    """Base exception for sync-layer errors."""


class AuthenticationError(GlycoSyncError):
    """No session, or the backend rejected the bearer token (401).

    Never retried automatically; the caller should prompt for a login.
    """


class AuthRequiredError(AuthenticationError):
    """Sync cannot be enabled without an authenticated session."""


class NetworkError(GlycoSyncError):
    """Transient connectivity failure talking to the remote store."""


class ValidationError(GlycoSyncError):
    """Malformed measurement payload (missing field, wrong type, out of range)."""


class ConflictError(GlycoSyncError):
    """Duplicate resource, e.g. an email that is already registered (409)."""


class RemoteResponseError(GlycoSyncError):
    """The remote store answered with an unexpected status or body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
