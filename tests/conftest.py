"""Shared test fixtures for GlycoSync tests."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SYNC_BACKEND", "none")
    monkeypatch.setenv("DB_PATH", ":memory:")
    monkeypatch.setenv("SYNC_AUTH_TOKEN", "")
    monkeypatch.setenv("SYNC_USER_ID", "")

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from glycosync.core.remote.session import AuthSession, SessionManager  # noqa: E402

TEST_USER = "user-1"


class FakeClock:
    """Deterministic epoch-ms clock; advance it explicitly."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


# ---------------------------------------------------------------------------
# Fake REST API (httpx.MockTransport)
# ---------------------------------------------------------------------------

class FakeSyncApi:
    """In-process stand-in for the ``/v1`` REST API.

    Honors bearer auth, upsert-on-POST and idempotent DELETE. Set
    ``fail_with`` to force every measurement call to answer with that status,
    or ``offline`` to raise a connection error.
    """

    def __init__(self, token: str = "tok-1", user_id: str = TEST_USER) -> None:
        self.token = token
        self.user_id = user_id
        self.records: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.fail_with: int | None = None
        self.offline = False
        self.accounts: dict[str, str] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.offline:
            raise httpx.ConnectError("connection refused", request=request)

        path = request.url.path
        if path.startswith("/v1/auth/"):
            return self._auth(request, path)

        if request.headers.get("Authorization") != f"Bearer {self.token}":
            return httpx.Response(401, json={"error": "unauthorized"})
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"error": "forced failure"})

        if path == "/v1/measurements" and request.method == "GET":
            return httpx.Response(200, json=list(self.records.values()))
        if path == "/v1/measurements" and request.method == "POST":
            body = json.loads(request.content)
            if "value" not in body:
                return httpx.Response(400, json={"error": "value required"})
            self.records[body["id"]] = body
            return httpx.Response(201, json=body)
        if path.startswith("/v1/measurements/") and request.method == "DELETE":
            self.records.pop(path.rsplit("/", 1)[-1], None)
            return httpx.Response(204)
        return httpx.Response(404)

    def _auth(self, request: httpx.Request, path: str) -> httpx.Response:
        if path == "/v1/auth/password-reset":
            return httpx.Response(204)
        if path == "/v1/auth/account":
            if request.headers.get("Authorization") != f"Bearer {self.token}":
                return httpx.Response(401)
            return httpx.Response(204)
        body = json.loads(request.content)
        email, password = body.get("email"), body.get("password")
        if not email or not password:
            return httpx.Response(400, json={"error": "email and password required"})
        if path == "/v1/auth/register":
            if email in self.accounts:
                return httpx.Response(409, json={"error": "email already registered"})
            self.accounts[email] = password
            status = 201
        elif self.accounts.get(email) != password:
            return httpx.Response(401, json={"error": "invalid credentials"})
        else:
            status = 200
        return httpx.Response(status, json={
            "user": {"id": self.user_id, "email": email},
            "token": self.token,
            "expiresAt": "2099-01-01T00:00:00Z",
        })

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url="https://sync.test", transport=httpx.MockTransport(self.handler)
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def sync_db():
    """Create an in-memory SyncDatabase for testing."""
    from glycosync.core.storage.database import SyncDatabase

    db = SyncDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def state_store(sync_db):
    from glycosync.core.storage.state import LocalStateStore

    return LocalStateStore(sync_db)


@pytest.fixture
def local_store(sync_db):
    from glycosync.core.storage.local_store import LocalMeasurementStore

    return LocalMeasurementStore(sync_db)


@pytest.fixture
def pending_queue(sync_db):
    from glycosync.core.storage.pending import PendingOperationQueue

    return PendingOperationQueue(sync_db)


@pytest.fixture
def encryption(state_store):
    """EncryptionService with a freshly generated key."""
    from glycosync.core.storage.encryption import EncryptionService

    service = EncryptionService(state_store)
    service.initialize_encryption_key()
    return service


@pytest.fixture
def audit_logger(sync_db):
    """Create an AuditLogger backed by in-memory SQLite."""
    from glycosync.core.audit.logger import AuditLogger

    return AuditLogger(sync_db)


@pytest.fixture
def session() -> SessionManager:
    """Signed-in session for TEST_USER."""
    return SessionManager(AuthSession(user_id=TEST_USER, token="tok-1"))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_api() -> FakeSyncApi:
    return FakeSyncApi()


@pytest.fixture
def document_collection():
    from glycosync.core.remote.documents import InMemoryDocumentCollection

    return InMemoryDocumentCollection()


@pytest.fixture
def envelope_factory(encryption) -> Callable[..., dict[str, Any]]:
    """Build raw envelope documents, encrypted with the current key by default."""
    from glycosync.core.storage.models import EncryptedEnvelope

    def _make(measurement, *, user_id: str = TEST_USER, encrypted_data: Any = None):
        data = encrypted_data if encrypted_data is not None else encryption.encrypt(measurement.to_dict())
        return EncryptedEnvelope(
            user_id=user_id,
            measurement_id=measurement.id,
            encrypted_data=data,
            timestamp=measurement.timestamp,
            last_modified=measurement.timestamp,
        ).to_document()

    return _make
