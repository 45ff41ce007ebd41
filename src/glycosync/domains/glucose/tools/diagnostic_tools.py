"""MCP tool for a one-shot sync health report."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from glycosync.core.sync.diagnostic import SyncDiagnostic


def register_diagnostic_tools(mcp: FastMCP, diagnostic: SyncDiagnostic) -> None:
    """Register the sync diagnostic tool on the MCP server."""

    @mcp.tool
    async def sync_diagnostic(ctx: Context) -> str:
        """Check sync health: state, queued changes, remote envelope corruption
        and the encryption key. Returns a 0-100 health score with issues and
        recommended next steps. Changes nothing.
        """
        report = await diagnostic.run_full_diagnostic()
        return json.dumps(report.to_dict(), indent=2)
