"""Fernet-based envelope encryption with key rotation.

Measurement payloads are encrypted before they leave the device. Envelopes
have the form ``v1:<key fingerprint>:<Fernet token>``; the Fernet token
carries its own IV and HMAC, so only the key that produced it can open it.

Rotation keeps superseded keys (most-recent-first, capped) so envelopes
written before a rotation remain readable.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Iterable

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from glycosync.core.errors import GlycoSyncError
from glycosync.core.storage.models import KeyRecord
from glycosync.core.storage.state import KEY_RECORD_KEY, LocalStateStore

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = "v1"
ENVELOPE_DELIMITER = ":"
MIN_ENVELOPE_LENGTH = 20
DEFAULT_LEGACY_KEY_LIMIT = 5
PHRASE_KDF_ITERATIONS = 100_000

_SELF_TEST_PAYLOAD = {"test": "data", "value": 123}


class EncryptionError(GlycoSyncError):
    """Raised when encryption fails or key material is unusable."""


class DecryptionError(EncryptionError):
    """Ciphertext could not be opened with any known key."""


class MalformedEnvelopeError(DecryptionError):
    """Ciphertext fails the structural check, so it is not one of our envelopes."""


def key_fingerprint(key: str) -> str:
    """Short SHA-256 fingerprint of a key, safe to log."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]


def is_structurally_valid(data: Any, min_length: int = MIN_ENVELOPE_LENGTH) -> bool:
    """Cheap envelope check: non-empty string, minimum length, has the delimiter.

    Does not attempt decryption.
    """
    return (
        isinstance(data, str)
        and len(data) >= min_length
        and ENVELOPE_DELIMITER in data
    )


@dataclass
class DecryptResult:
    """Outcome of a multi-key decryption attempt."""

    data: Any
    used_legacy: bool = False
    legacy_index: int | None = None
    used_extra_key: str | None = None


class EncryptionService:
    """Device-local key lifecycle plus envelope encrypt/decrypt.

    Usage::

        service = EncryptionService(LocalStateStore(db))
        service.initialize_encryption_key()
        envelope = service.encrypt({"value": 95})
        service.reset_encryption_key()
        service.decrypt(envelope)  # still works via the legacy key
    """

    def __init__(
        self,
        state: LocalStateStore,
        *,
        legacy_key_limit: int = DEFAULT_LEGACY_KEY_LIMIT,
    ) -> None:
        self._state = state
        self._legacy_key_limit = max(0, legacy_key_limit)
        self._record: KeyRecord | None = None
        self._fernet: Fernet | None = None
        self._legacy_fernets: list[Fernet] = []

    # ------------------------------------------------------------------
    # Key lifecycle
    # ------------------------------------------------------------------

    def initialize_encryption_key(self) -> KeyRecord:
        """Load the persisted key record, generating one on first use.

        Idempotent: later calls return the already-loaded record.
        """
        if self._record is not None:
            return self._record

        stored = self._state.get(KEY_RECORD_KEY)
        if stored:
            try:
                record = KeyRecord.from_dict(stored)
            except (KeyError, TypeError, ValueError) as exc:
                raise EncryptionError(f"Stored key record is unreadable: {exc}") from exc
            logger.info("Encryption key loaded (v%d, hash %s)", record.version, record.hash)
        else:
            key = self.generate_key()
            record = KeyRecord(key=key, version=1, hash=key_fingerprint(key))
            self._state.set(KEY_RECORD_KEY, record.to_dict())
            logger.info("Encryption key generated (v1, hash %s)", record.hash)

        self._activate(record)
        return record

    def reset_encryption_key(self) -> KeyRecord:
        """Rotate to a fresh key, keeping the previous one as a legacy key.

        The new key, bumped version and legacy list are persisted in one
        write before the in-memory key changes.
        """
        current = self._require_record()
        new_key = self.generate_key()
        record = KeyRecord(
            key=new_key,
            version=current.version + 1,
            hash=key_fingerprint(new_key),
            legacy_keys=self._capped_legacy([current.key, *current.legacy_keys]),
        )
        self._state.set_many({KEY_RECORD_KEY: record.to_dict()})
        self._activate(record)
        logger.warning(
            "Encryption key rotated: v%d (%s) -> v%d (%s), %d legacy keys retained",
            current.version,
            current.hash,
            record.version,
            record.hash,
            len(record.legacy_keys),
        )
        return record

    def add_legacy_key_candidate(self, key: str) -> bool:
        """Retain an externally supplied old key for decrypting historical data.

        Returns:
            True if the key was added, False if invalid or already known.
        """
        current = self._require_record()
        if not key or key == current.key or key in current.legacy_keys:
            return False
        try:
            Fernet(key.encode("utf-8"))
        except (ValueError, TypeError):
            logger.warning("Rejected legacy key candidate: not a valid Fernet key")
            return False
        record = KeyRecord(
            key=current.key,
            version=current.version,
            hash=current.hash,
            legacy_keys=self._capped_legacy([key, *current.legacy_keys]),
        )
        self._state.set_many({KEY_RECORD_KEY: record.to_dict()})
        self._activate(record)
        logger.info("Legacy key candidate %s added", key_fingerprint(key))
        return True

    def export_key(self) -> str:
        """Return the current key for manual backup."""
        return self._require_record().key

    def import_key(self, key: str) -> KeyRecord:
        """Adopt ``key`` as the current key (e.g. restoring on a new device).

        The previously active key is kept as a legacy key.
        """
        try:
            Fernet(key.encode("utf-8"))
        except (ValueError, TypeError, AttributeError) as exc:
            raise EncryptionError(f"Invalid encryption key: {exc}") from exc

        current = self._require_record()
        if key == current.key:
            return current
        record = KeyRecord(
            key=key,
            version=current.version + 1,
            hash=key_fingerprint(key),
            legacy_keys=self._capped_legacy(
                [current.key, *(k for k in current.legacy_keys if k != key)]
            ),
        )
        self._state.set_many({KEY_RECORD_KEY: record.to_dict()})
        self._activate(record)
        logger.info("Encryption key imported (v%d, hash %s)", record.version, record.hash)
        return record

    def backup_key_with_phrase(self, phrase: str) -> dict[str, Any]:
        """Wrap the current key with a key derived from a recovery phrase.

        Returns:
            A JSON-serializable backup blob for :meth:`restore_key_from_phrase`.
        """
        if not phrase:
            raise EncryptionError("Recovery phrase must not be empty")
        salt = os.urandom(16)
        wrapping = Fernet(_derive_phrase_key(phrase, salt, PHRASE_KDF_ITERATIONS))
        wrapped = wrapping.encrypt(
            json.dumps({"key": self._require_record().key}).encode("utf-8")
        )
        return {
            "wrapped_key": wrapped.decode("utf-8"),
            "salt_hex": salt.hex(),
            "kdf": {"algo": "PBKDF2-SHA256", "iterations": PHRASE_KDF_ITERATIONS, "key_len": 32},
        }

    def restore_key_from_phrase(self, phrase: str, backup: dict[str, Any]) -> KeyRecord:
        """Unwrap a phrase backup and import the key it contains."""
        try:
            salt = bytes.fromhex(backup["salt_hex"])
            iterations = int(backup.get("kdf", {}).get("iterations", PHRASE_KDF_ITERATIONS))
            wrapping = Fernet(_derive_phrase_key(phrase, salt, iterations))
            payload = json.loads(wrapping.decrypt(backup["wrapped_key"].encode("utf-8")))
        except InvalidToken as exc:
            raise DecryptionError("Key backup could not be unwrapped: wrong phrase") from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise EncryptionError(f"Malformed key backup: {exc}") from exc

        key = payload.get("key") if isinstance(payload, dict) else None
        if not isinstance(key, str):
            raise EncryptionError("Key backup does not contain a key")
        return self.import_key(key)

    @property
    def key_record(self) -> KeyRecord:
        return self._require_record()

    @property
    def key_hash(self) -> str:
        return self._require_record().hash

    # ------------------------------------------------------------------
    # Encrypt / decrypt
    # ------------------------------------------------------------------

    def encrypt(self, data: Any) -> str:
        """Encrypt a JSON-serializable value into a versioned envelope.

        Raises:
            EncryptionError: If serialization or encryption fails.
        """
        record = self._require_record()
        fernet = self._require_fernet()
        try:
            plaintext = json.dumps(data, separators=(",", ":")).encode("utf-8")
            token = fernet.encrypt(plaintext).decode("utf-8")
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Encryption failed: {exc}") from exc
        return ENVELOPE_DELIMITER.join((ENVELOPE_VERSION, record.hash, token))

    def decrypt(self, ciphertext: Any) -> Any:
        """Decrypt an envelope with the current key, then legacy keys.

        Raises:
            MalformedEnvelopeError: If the envelope fails the structural check.
            DecryptionError: If no known key opens it.
        """
        return self.try_decrypt_with_any_key(ciphertext).data

    def try_decrypt_with_any_key(
        self,
        ciphertext: Any,
        extra_keys: Iterable[str] = (),
    ) -> DecryptResult:
        """Decrypt and report which key succeeded.

        Order: current key, legacy keys most-recent-first, then ``extra_keys``.
        """
        self._require_record()
        key_hash, token = self._split_envelope(ciphertext)
        if key_hash != self.key_hash:
            logger.debug("Envelope key hash %s differs from current %s", key_hash, self.key_hash)

        data = _try_fernet(self._require_fernet(), token)
        if data is not _FAILED:
            return DecryptResult(data=data)

        for index, fernet in enumerate(self._legacy_fernets):
            data = _try_fernet(fernet, token)
            if data is not _FAILED:
                logger.info("Envelope opened with legacy key #%d", index)
                return DecryptResult(data=data, used_legacy=True, legacy_index=index)

        for key in extra_keys:
            if not key:
                continue
            try:
                fernet = Fernet(key.encode("utf-8"))
            except (ValueError, TypeError):
                logger.debug("Skipping invalid candidate key")
                continue
            data = _try_fernet(fernet, token)
            if data is not _FAILED:
                logger.info("Envelope opened with candidate key %s", key_fingerprint(key))
                return DecryptResult(data=data, used_legacy=True, used_extra_key=key)

        raise DecryptionError("Decryption failed: no current or legacy key matches")

    def test_crypto(self) -> bool:
        """Round-trip a known payload; health signal for diagnostics."""
        try:
            return self.decrypt(self.encrypt(_SELF_TEST_PAYLOAD)) == _SELF_TEST_PAYLOAD
        except EncryptionError:
            logger.exception("Encryption self-test failed")
            return False

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet key (URL-safe base64 of 32 random bytes)."""
        return Fernet.generate_key().decode("utf-8")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_record(self) -> KeyRecord:
        if self._record is None:
            return self.initialize_encryption_key()
        return self._record

    def _require_fernet(self) -> Fernet:
        self._require_record()
        if self._fernet is None:
            raise EncryptionError("Encryption key is not active")
        return self._fernet

    def _activate(self, record: KeyRecord) -> None:
        try:
            fernet = Fernet(record.key.encode("utf-8"))
        except (ValueError, TypeError) as exc:
            raise EncryptionError(f"Invalid encryption key: {exc}") from exc
        legacy: list[Fernet] = []
        for key in record.legacy_keys:
            try:
                legacy.append(Fernet(key.encode("utf-8")))
            except (ValueError, TypeError):
                logger.warning("Ignoring unusable legacy key %s", key_fingerprint(key))
        self._record = record
        self._fernet = fernet
        self._legacy_fernets = legacy

    def _capped_legacy(self, keys: list[str]) -> list[str]:
        seen: list[str] = []
        for key in keys:
            if key not in seen:
                seen.append(key)
        return seen[: self._legacy_key_limit]

    @staticmethod
    def _split_envelope(ciphertext: Any) -> tuple[str, str]:
        if not is_structurally_valid(ciphertext):
            raise MalformedEnvelopeError("Malformed envelope: too short or missing delimiter")
        parts = ciphertext.split(ENVELOPE_DELIMITER, 2)
        if len(parts) != 3 or parts[0] != ENVELOPE_VERSION or not parts[2]:
            raise MalformedEnvelopeError("Malformed envelope: unknown version or layout")
        return parts[1], parts[2]


_FAILED = object()


def _try_fernet(fernet: Fernet, token: str) -> Any:
    try:
        plaintext = fernet.decrypt(token.encode("utf-8"))
    except InvalidToken:
        return _FAILED
    try:
        return json.loads(plaintext)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _FAILED


def _derive_phrase_key(phrase: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)
    return base64.urlsafe_b64encode(kdf.derive(phrase.encode("utf-8")))
