"""MCP tools for the device encryption key: rotation, export/import and
phrase-protected backup."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

from glycosync.core.storage.encryption import EncryptionError

if TYPE_CHECKING:
    from glycosync.core.audit.logger import AuditLogger
    from glycosync.core.storage.encryption import EncryptionService
    from glycosync.core.storage.models import KeyRecord

logger = logging.getLogger(__name__)


def _error(exc: Exception) -> str:
    return json.dumps({"status": "error", "error_type": type(exc).__name__, "message": str(exc)})


def register_encryption_tools(
    mcp: FastMCP,
    encryption: EncryptionService,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register encryption key tools on the MCP server."""

    def _key_changed(old_hash: str, record: KeyRecord, status: str) -> str:
        if record.hash == old_hash:
            status = "unchanged"
        elif audit_logger is not None:
            audit_logger.log_key_rotation(
                old_hash=old_hash, new_hash=record.hash, version=record.version
            )
        return json.dumps({
            "status": status,
            "key_version": record.version,
            "key_hash": record.hash,
            "legacy_keys_retained": len(record.legacy_keys),
        })

    @mcp.tool
    async def rotate_encryption_key(
        ctx: Context,
        confirm: str = "",
    ) -> str:
        """Rotate to a new encryption key. The old key is kept as a legacy key
        so existing envelopes stay readable.

        Args:
            confirm: Must be exactly 'ROTATE' to proceed. Safety gate.
        """
        if confirm != "ROTATE":
            return json.dumps({
                "status": "cancelled",
                "message": "To rotate the encryption key, call this tool with confirm='ROTATE'.",
            })
        old_hash = encryption.key_hash
        try:
            record = encryption.reset_encryption_key()
        except EncryptionError as exc:
            return _error(exc)
        return _key_changed(old_hash, record, "rotated")

    @mcp.tool
    async def export_encryption_key(
        ctx: Context,
        confirm: str = "",
    ) -> str:
        """Return the current encryption key for manual backup. Anyone holding
        it can read your synced readings.

        Args:
            confirm: Must be exactly 'EXPORT' to proceed. Safety gate.
        """
        if confirm != "EXPORT":
            return json.dumps({
                "status": "cancelled",
                "message": "To reveal the encryption key, call this tool with confirm='EXPORT'.",
            })
        logger.warning("Encryption key %s exported", encryption.key_hash)
        return json.dumps({
            "status": "ok",
            "key": encryption.export_key(),
            "key_hash": encryption.key_hash,
        })

    @mcp.tool
    async def import_encryption_key(
        ctx: Context,
        key: str,
        confirm: str = "",
    ) -> str:
        """Adopt a key exported from another device. The current key is kept
        as a legacy key.

        Args:
            key: The exported key.
            confirm: Must be exactly 'IMPORT' to proceed. Safety gate.
        """
        if confirm != "IMPORT":
            return json.dumps({
                "status": "cancelled",
                "message": "To replace the encryption key, call this tool with confirm='IMPORT'.",
            })
        old_hash = encryption.key_hash
        try:
            record = encryption.import_key(key)
        except EncryptionError as exc:
            return _error(exc)
        return _key_changed(old_hash, record, "imported")

    @mcp.tool
    async def backup_encryption_key(
        ctx: Context,
        phrase: str,
    ) -> str:
        """Wrap the current key with a recovery phrase. Store the returned
        backup; it is useless without the phrase.

        Args:
            phrase: Recovery phrase used to derive the wrapping key.
        """
        try:
            backup = encryption.backup_key_with_phrase(phrase)
        except EncryptionError as exc:
            return _error(exc)
        return json.dumps({"status": "ok", "key_hash": encryption.key_hash, "backup": backup})

    @mcp.tool
    async def restore_encryption_key(
        ctx: Context,
        phrase: str,
        backup: str,
    ) -> str:
        """Restore a key from a phrase backup made with backup_encryption_key.

        Args:
            phrase: The recovery phrase used for the backup.
            backup: The backup object, as JSON text.
        """
        try:
            blob = json.loads(backup)
        except ValueError as exc:
            return json.dumps({
                "status": "error",
                "error_type": "ValidationError",
                "message": f"backup is not valid JSON: {exc}",
            })
        if not isinstance(blob, dict):
            return json.dumps({
                "status": "error",
                "error_type": "ValidationError",
                "message": "backup must be a JSON object",
            })
        old_hash = encryption.key_hash
        try:
            record = encryption.restore_key_from_phrase(phrase, blob)
        except EncryptionError as exc:
            logger.info("Key restore failed: %s", type(exc).__name__)
            return _error(exc)
        return _key_changed(old_hash, record, "restored")

    @mcp.tool
    async def test_encryption(ctx: Context) -> str:
        """Round-trip a known payload through the current key."""
        ok = encryption.test_crypto()
        record = encryption.key_record
        return json.dumps({
            "status": "ok" if ok else "error",
            "round_trip": ok,
            "key_version": record.version,
            "key_hash": record.hash,
            "legacy_keys": len(record.legacy_keys),
        })
