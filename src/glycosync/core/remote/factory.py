"""Build the configured remote backend from Settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from glycosync.core.config.settings import Settings
from glycosync.core.remote import RemoteMeasurementStore
from glycosync.core.remote.document_store import DocumentRemoteStore
from glycosync.core.remote.documents import (
    DocumentCollection,
    FirestoreRestCollection,
    InMemoryDocumentCollection,
)
from glycosync.core.remote.http_api import ApiAuthClient, HttpRemoteStore
from glycosync.core.remote.session import SessionManager
from glycosync.core.storage.encryption import EncryptionService

logger = logging.getLogger(__name__)


@dataclass
class RemoteBackend:
    """What the server needs from the selected backend.

    ``collection`` is set only for the document backend (the repair tooling
    works on raw envelopes); ``auth`` only for the HTTP backend.
    """

    store: RemoteMeasurementStore
    collection: DocumentCollection | None = None
    auth: ApiAuthClient | None = None


def create_remote_store(
    settings: Settings,
    session: SessionManager,
    encryption: EncryptionService,
    *,
    client: httpx.AsyncClient | None = None,
    collection: DocumentCollection | None = None,
) -> RemoteBackend | None:
    """Select the backend named by ``settings.sync_backend``.

    Returns None for ``"none"`` (local-only mode).
    """
    backend = settings.sync_backend
    if backend == "none":
        logger.info("Remote sync backend disabled; running local-only")
        return None

    if backend == "http":
        if client is None:
            if not settings.sync_api_url:
                raise ValueError("SYNC_API_URL is required for the http sync backend")
            client = httpx.AsyncClient(
                base_url=settings.sync_api_url, timeout=settings.sync_request_timeout
            )
        logger.info("Remote sync backend: http (%s)", settings.sync_api_url or "injected client")
        return RemoteBackend(
            store=HttpRemoteStore(client, session),
            auth=ApiAuthClient(client, session),
        )

    if backend == "document":
        if collection is None:
            if settings.firestore_project_id:
                if client is None:
                    client = httpx.AsyncClient(
                        base_url=settings.firestore_base_url,
                        timeout=settings.sync_request_timeout,
                    )
                collection = FirestoreRestCollection(
                    client,
                    settings.firestore_project_id,
                    settings.firestore_collection,
                    session,
                )
                logger.info(
                    "Remote sync backend: document (Firestore project %s, collection %s)",
                    settings.firestore_project_id,
                    settings.firestore_collection,
                )
            else:
                collection = InMemoryDocumentCollection()
                logger.warning(
                    "No FIRESTORE_PROJECT_ID configured; using an in-memory document "
                    "collection (data is lost on restart)"
                )
        store = DocumentRemoteStore(
            collection,
            encryption,
            session,
            min_envelope_length=settings.envelope_min_length,
        )
        return RemoteBackend(store=store, collection=collection)

    raise ValueError(f"Unknown sync backend: {backend!r}")
