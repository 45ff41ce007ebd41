"""Document collections holding encrypted measurement envelopes.

Two implementations share the :class:`DocumentCollection` protocol:

* ``FirestoreRestCollection`` — Firestore REST v1 over httpx.
* ``InMemoryDocumentCollection`` — dict-backed, for tests and offline use.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

import httpx

from glycosync.core.errors import RemoteResponseError
from glycosync.core.remote.http_api import json_body, send_request
from glycosync.core.remote.session import SessionManager

logger = logging.getLogger(__name__)


@dataclass
class DocumentSnapshot:
    """A document id with its decoded fields."""

    id: str
    data: dict[str, Any]


@runtime_checkable
class DocumentCollection(Protocol):
    """Minimal document-database surface used by the sync and repair layers."""

    async def get(self, doc_id: str) -> dict[str, Any] | None:
        """Fields of ``doc_id``, or None when it does not exist."""
        ...

    async def set(self, doc_id: str, data: dict[str, Any], *, merge: bool = False) -> None:
        """Write a document. ``merge=False`` overwrites every field."""
        ...

    async def delete(self, doc_id: str) -> None:
        """Delete a document; absent documents are not an error."""
        ...

    async def where_equal(self, field: str, value: Any) -> list[DocumentSnapshot]:
        """All documents whose ``field`` equals ``value``."""
        ...


class InMemoryDocumentCollection:
    """Dict-backed collection. Values are deep-copied in and out."""

    def __init__(self, documents: dict[str, dict[str, Any]] | None = None) -> None:
        self._docs: dict[str, dict[str, Any]] = copy.deepcopy(documents or {})

    async def get(self, doc_id: str) -> dict[str, Any] | None:
        doc = self._docs.get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def set(self, doc_id: str, data: dict[str, Any], *, merge: bool = False) -> None:
        if merge and doc_id in self._docs:
            self._docs[doc_id].update(copy.deepcopy(data))
        else:
            self._docs[doc_id] = copy.deepcopy(data)

    async def delete(self, doc_id: str) -> None:
        self._docs.pop(doc_id, None)

    async def where_equal(self, field: str, value: Any) -> list[DocumentSnapshot]:
        return [
            DocumentSnapshot(id=doc_id, data=copy.deepcopy(doc))
            for doc_id, doc in sorted(self._docs.items())
            if doc.get(field) == value
        ]

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Copy of every stored document, keyed by id."""
        return copy.deepcopy(self._docs)

    def __len__(self) -> int:
        return len(self._docs)


class FirestoreRestCollection:
    """A Firestore collection accessed through the REST v1 API.

    Usage::

        client = httpx.AsyncClient(base_url="https://firestore.googleapis.com/v1")
        coll = FirestoreRestCollection(client, "my-project", "encrypted_measurements", session)
        docs = await coll.where_equal("userId", "u1")
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        project_id: str,
        collection: str,
        session: SessionManager,
    ) -> None:
        self._client = client
        self._collection = collection
        self._session = session
        self._root = f"/projects/{project_id}/databases/(default)/documents"

    async def get(self, doc_id: str) -> dict[str, Any] | None:
        try:
            response = await send_request(
                self._client, "GET", self._doc_path(doc_id), headers=self._headers()
            )
        except RemoteResponseError as exc:
            if exc.status_code == 404:
                return None
            raise
        payload = json_body(response)
        try:
            return decode_fields(payload.get("fields", {}))
        except (AttributeError, TypeError, ValueError) as exc:
            raise RemoteResponseError(
                f"Malformed document {doc_id!r}: {exc}", response.status_code
            ) from exc

    async def set(self, doc_id: str, data: dict[str, Any], *, merge: bool = False) -> None:
        params = [("updateMask.fieldPaths", name) for name in data] if merge else None
        await send_request(
            self._client,
            "PATCH",
            self._doc_path(doc_id),
            headers=self._headers(),
            json={"fields": encode_fields(data)},
            params=params,
        )

    async def delete(self, doc_id: str) -> None:
        try:
            await send_request(
                self._client, "DELETE", self._doc_path(doc_id), headers=self._headers()
            )
        except RemoteResponseError as exc:
            if exc.status_code != 404:
                raise

    async def where_equal(self, field: str, value: Any) -> list[DocumentSnapshot]:
        query = {
            "structuredQuery": {
                "from": [{"collectionId": self._collection}],
                "where": {
                    "fieldFilter": {
                        "field": {"fieldPath": field},
                        "op": "EQUAL",
                        "value": encode_value(value),
                    }
                },
            }
        }
        response = await send_request(
            self._client, "POST", f"{self._root}:runQuery", headers=self._headers(), json=query
        )
        payload = json_body(response)
        if not isinstance(payload, list):
            raise RemoteResponseError(
                f"Expected a JSON array from runQuery, got {type(payload).__name__}",
                response.status_code,
            )
        results: list[DocumentSnapshot] = []
        for entry in payload:
            document = entry.get("document") if isinstance(entry, dict) else None
            if not isinstance(document, dict):
                continue  # readTime-only rows carry no document
            doc_id = str(document.get("name", "")).rsplit("/", 1)[-1]
            try:
                data = decode_fields(document.get("fields", {}))
            except (AttributeError, TypeError, ValueError) as exc:
                logger.warning("Skipping undecodable document %s: %s", doc_id, exc)
                continue
            results.append(DocumentSnapshot(id=doc_id, data=data))
        logger.debug("runQuery %s == ? matched %d documents", field, len(results))
        return results

    def _doc_path(self, doc_id: str) -> str:
        return f"{self._root}/{self._collection}/{quote(doc_id, safe='')}"

    def _headers(self) -> dict[str, str]:
        return self._session.require().authorization_header


# ------------------------------------------------------------------
# Firestore typed-value codec
# ------------------------------------------------------------------

def encode_value(value: Any) -> dict[str, Any]:
    """Python value -> Firestore ``Value``."""
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value)}}
    raise TypeError(f"Cannot encode {type(value).__name__} as a Firestore value")


def encode_fields(data: dict[str, Any]) -> dict[str, Any]:
    return {key: encode_value(val) for key, val in data.items()}


def decode_value(value: dict[str, Any]) -> Any:
    """Firestore ``Value`` -> Python value. Unknown kinds decode to None."""
    if "stringValue" in value:
        return value["stringValue"]
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "timestampValue" in value:
        return value["timestampValue"]
    if "arrayValue" in value:
        return [decode_value(v) for v in value["arrayValue"].get("values", [])]
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields", {}))
    return None


def decode_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: decode_value(val) for key, val in fields.items()}
