"""Document backend: measurements stored as client-side encrypted envelopes."""

from __future__ import annotations

import logging
from typing import Callable

from glycosync.core.clock import now_ms
from glycosync.core.errors import GlycoSyncError, ValidationError
from glycosync.core.remote.documents import DocumentCollection
from glycosync.core.remote.session import SessionManager
from glycosync.core.storage.encryption import (
    MIN_ENVELOPE_LENGTH,
    DecryptionError,
    EncryptionService,
    is_structurally_valid,
)
from glycosync.core.storage.models import EncryptedEnvelope, Measurement

logger = logging.getLogger(__name__)


class DocumentRemoteStore:
    """RemoteMeasurementStore over a :class:`DocumentCollection`.

    Each measurement is one document ``"{userId}_{measurementId}"`` whose
    ``encryptedData`` is an envelope produced by :class:`EncryptionService`.
    Reads skip flagged, malformed and undecryptable envelopes; their ids are
    left in :attr:`skipped_document_ids` for the corruption tooling.
    """

    def __init__(
        self,
        collection: DocumentCollection,
        encryption: EncryptionService,
        session: SessionManager,
        *,
        min_envelope_length: int = MIN_ENVELOPE_LENGTH,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._collection = collection
        self._encryption = encryption
        self._session = session
        self._min_length = min_envelope_length
        self._clock = clock
        self.skipped_document_ids: list[str] = []

    @property
    def backend_name(self) -> str:
        return "document"

    async def get_measurements(self) -> list[Measurement]:
        user_id = self._session.require().user_id
        docs = await self._collection.where_equal("userId", user_id)

        skipped: list[str] = []
        measurements: list[Measurement] = []
        for doc in docs:
            envelope = EncryptedEnvelope.from_document(doc.data)
            if envelope.is_corrupted:
                skipped.append(doc.id)
                continue
            if not is_structurally_valid(envelope.encrypted_data, self._min_length):
                logger.warning("Skipping structurally invalid envelope %s", doc.id)
                skipped.append(doc.id)
                continue
            try:
                result = self._encryption.try_decrypt_with_any_key(envelope.encrypted_data)
                measurement = Measurement.from_dict(result.data)
            except DecryptionError:
                logger.warning("Skipping envelope %s: no known key opens it", doc.id)
                skipped.append(doc.id)
                continue
            except ValidationError as exc:
                logger.warning("Skipping envelope %s: %s", doc.id, exc)
                skipped.append(doc.id)
                continue

            measurements.append(measurement)
            if result.used_legacy:
                await self._reencrypt(doc.id, measurement)

        self.skipped_document_ids = skipped
        if skipped:
            logger.info("Skipped %d unreadable envelopes for user %s", len(skipped), user_id)
        measurements.sort(key=lambda m: m.timestamp, reverse=True)
        return measurements

    async def add_measurement(self, measurement: Measurement) -> Measurement:
        user_id = self._session.require().user_id
        envelope = EncryptedEnvelope(
            user_id=user_id,
            measurement_id=measurement.id,
            encrypted_data=self._encryption.encrypt(measurement.to_dict()),
            timestamp=measurement.timestamp,
            last_modified=self._clock(),
        )
        # Full overwrite: a re-added measurement also clears any corruption flag.
        await self._collection.set(
            EncryptedEnvelope.document_id(user_id, measurement.id),
            envelope.to_document(),
            merge=False,
        )
        return measurement

    async def delete_measurement(self, measurement_id: str) -> None:
        user_id = self._session.require().user_id
        await self._collection.delete(EncryptedEnvelope.document_id(user_id, measurement_id))

    async def _reencrypt(self, doc_id: str, measurement: Measurement) -> None:
        """Rewrite a legacy-key envelope under the current key; best effort."""
        try:
            await self._collection.set(
                doc_id,
                {
                    "encryptedData": self._encryption.encrypt(measurement.to_dict()),
                    "lastModified": self._clock(),
                },
                merge=True,
            )
            logger.info("Re-encrypted envelope %s with the current key", doc_id)
        except GlycoSyncError as exc:
            logger.warning("Could not re-encrypt envelope %s: %s", doc_id, exc)
