"""MCP tools for finding, flagging and repairing corrupted remote envelopes.

Only available with the document backend. Deleting corrupted envelopes is
irreversible and requires ``confirm='DELETE'``.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from glycosync.core.errors import AuthenticationError

if TYPE_CHECKING:
    from glycosync.core.remote.session import SessionManager
    from glycosync.core.repair.detector import CorruptionDetector

logger = logging.getLogger(__name__)


def register_repair_tools(
    mcp: FastMCP,
    detector: CorruptionDetector,
    session: SessionManager,
) -> None:
    """Register corruption tooling on the MCP server."""

    def _user_id() -> str:
        return session.require().user_id

    def _auth_error(exc: AuthenticationError) -> str:
        return json.dumps({
            "status": "error",
            "error_type": type(exc).__name__,
            "message": str(exc),
        })

    @mcp.tool
    async def analyze_remote_documents(ctx: Context) -> str:
        """Scan your remote envelopes for structural corruption. Changes nothing."""
        try:
            user_id = _user_id()
        except AuthenticationError as exc:
            return _auth_error(exc)
        report = await detector.analyze(user_id)
        return json.dumps(report.to_dict(), indent=2)

    @mcp.tool
    async def clean_corrupted_measurements(
        ctx: Context,
        mode: str = "flag",
        confirm: str = "",
    ) -> str:
        """Flag or delete corrupted remote envelopes.

        ``flag`` keeps the original ciphertext so a later repair can restore
        it. ``delete`` removes the envelopes permanently.

        Args:
            mode: 'flag' (default, reversible) or 'delete' (irreversible).
            confirm: Must be exactly 'DELETE' when mode is 'delete'. Safety gate.
        """
        if mode == "delete" and confirm != "DELETE":
            return json.dumps({
                "status": "cancelled",
                "message": (
                    "To delete corrupted envelopes, call this tool with "
                    "mode='delete' and confirm='DELETE'. This action cannot be undone."
                ),
            })
        try:
            user_id = _user_id()
        except AuthenticationError as exc:
            return _auth_error(exc)
        report = await detector.clean_corrupted_measurements(user_id, mode)  # type: ignore[arg-type]
        return json.dumps(report.to_dict(), indent=2)

    @mcp.tool
    async def repair_corrupted_documents(
        ctx: Context,
        candidate_legacy_key: str = "",
    ) -> str:
        """Try to decrypt flagged envelopes with every known key and restore them.

        Args:
            candidate_legacy_key: Optional old key to try after the known keys.
                Kept as a legacy key if it repairs anything.
        """
        try:
            user_id = _user_id()
        except AuthenticationError as exc:
            return _auth_error(exc)
        report = await detector.scan_and_repair_corrupted_documents(
            user_id, candidate_legacy_key or None
        )
        return json.dumps(report.to_dict(), indent=2)
