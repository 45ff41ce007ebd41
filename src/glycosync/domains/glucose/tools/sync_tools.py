"""MCP tools for remote sync and the account behind it."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from glycosync.core.errors import GlycoSyncError
from glycosync.core.remote.session import AuthSession

if TYPE_CHECKING:
    from glycosync.core.remote.http_api import ApiAuthClient
    from glycosync.core.remote.session import SessionManager
    from glycosync.core.sync.coordinator import SyncCoordinator

logger = logging.getLogger(__name__)


def _error(exc: Exception) -> str:
    return json.dumps({"status": "error", "error_type": type(exc).__name__, "message": str(exc)})


def register_sync_tools(
    mcp: FastMCP,
    coordinator: SyncCoordinator,
    session: SessionManager,
    auth_client: ApiAuthClient | None = None,
) -> None:
    """Register sync tools on the MCP server."""

    @mcp.tool
    async def sync_status(ctx: Context) -> str:
        """Show whether sync is enabled, its state, last sync time and queued operations."""
        return json.dumps({"status": "ok", **coordinator.get_status()})

    @mcp.tool
    async def set_sync_enabled(
        ctx: Context,
        enabled: bool,
    ) -> str:
        """Turn remote sync on or off. Turning it on requires a signed-in session
        and runs a sync immediately.

        Args:
            enabled: True to enable sync, False to disable it.
        """
        try:
            result = await coordinator.set_sync_enabled(enabled)
        except GlycoSyncError as exc:
            return _error(exc)
        return json.dumps({"enabled": coordinator.enabled, "sync": result.to_dict(), "status": result.status})

    @mcp.tool
    async def sync_now(ctx: Context) -> str:
        """Reconcile local readings with the remote backend now."""
        result = await coordinator.sync_now()
        return json.dumps(result.to_dict())

    @mcp.tool
    async def sign_in(
        ctx: Context,
        email: str = "",
        password: str = "",
        token: str = "",
        user_id: str = "",
    ) -> str:
        """Sign in to the sync backend.

        With the HTTP backend, pass email and password. Otherwise pass a
        bearer token and user id issued by the identity provider.

        Args:
            email: Account email (HTTP backend).
            password: Account password (HTTP backend).
            token: Bearer token (document backend).
            user_id: User id the token belongs to (document backend).
        """
        try:
            if auth_client is not None and email:
                established = await auth_client.login(email, password)
            elif token and user_id:
                established = AuthSession(user_id=user_id, token=token, email=email)
                session.set(established)
            else:
                return json.dumps({
                    "status": "error",
                    "error_type": "ValidationError",
                    "message": (
                        "Provide email and password (HTTP backend) "
                        "or token and user_id."
                    ),
                })
        except GlycoSyncError as exc:
            logger.info("Sign-in failed: %s", type(exc).__name__)
            return _error(exc)

        return json.dumps({
            "status": "signed_in",
            "user_id": established.user_id,
            "expires_at": established.expires_at,
        })

    def _needs_account_api() -> str:
        return json.dumps({
            "status": "error",
            "error_type": "GlycoSyncError",
            "message": "Account management needs the HTTP sync backend.",
        })

    @mcp.tool
    async def register_account(
        ctx: Context,
        email: str,
        password: str,
    ) -> str:
        """Create an account on the HTTP sync backend and sign in to it.

        Args:
            email: Account email.
            password: Account password.
        """
        if auth_client is None:
            return _needs_account_api()
        try:
            established = await auth_client.register(email, password)
        except GlycoSyncError as exc:
            logger.info("Registration failed: %s", type(exc).__name__)
            return _error(exc)
        return json.dumps({
            "status": "registered",
            "user_id": established.user_id,
            "expires_at": established.expires_at,
        })

    @mcp.tool
    async def request_password_reset(
        ctx: Context,
        email: str,
    ) -> str:
        """Ask the HTTP sync backend to email a password reset link.

        The reply is the same whether or not the account exists.

        Args:
            email: Account email.
        """
        if auth_client is None:
            return _needs_account_api()
        try:
            await auth_client.request_password_reset(email)
        except GlycoSyncError as exc:
            return _error(exc)
        return json.dumps({
            "status": "requested",
            "message": "If an account exists for that email, a reset link has been sent.",
        })

    @mcp.tool
    async def delete_account(
        ctx: Context,
        confirm: str = "",
    ) -> str:
        """Delete the signed-in account and every reading stored with it on
        the server. Local readings are kept and sync is turned off.

        Args:
            confirm: Must be exactly 'DELETE' to proceed. Safety gate.
        """
        if confirm != "DELETE":
            return json.dumps({
                "status": "cancelled",
                "message": (
                    "To delete your account and its remote readings, call this tool "
                    "with confirm='DELETE'. This action cannot be undone."
                ),
            })
        if auth_client is None:
            return _needs_account_api()
        try:
            await auth_client.delete_account()
        except GlycoSyncError as exc:
            return _error(exc)
        await coordinator.set_sync_enabled(False)
        return json.dumps({"status": "deleted", "sync_enabled": coordinator.enabled})

    @mcp.tool
    async def sign_out(ctx: Context) -> str:
        """Forget the current session. Sync stays configured but fails until
        you sign in again; local readings are untouched."""
        if auth_client is not None:
            auth_client.sign_out()
        else:
            session.clear()
        logger.info("Signed out")
        return json.dumps({"status": "signed_out", "sync_state": coordinator.state.value})
