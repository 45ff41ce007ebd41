"""Tests for HttpRemoteStore and ApiAuthClient against an httpx.MockTransport API."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from glycosync.core.errors import (
    AuthenticationError,
    ConflictError,
    NetworkError,
    RemoteResponseError,
    ValidationError,
)
from glycosync.core.remote import RemoteMeasurementStore
from glycosync.core.remote.http_api import ApiAuthClient, HttpRemoteStore
from glycosync.core.remote.session import AuthSession, SessionManager
from glycosync.core.storage.models import Measurement


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _m(id: str, timestamp: int, value: float = 100.0) -> Measurement:
    return Measurement(id=id, value=value, type="fasting", timestamp=timestamp)


@pytest.fixture
def store(fake_api, session):
    return HttpRemoteStore(fake_api.client(), session)


class TestHttpRemoteStore:
    def test_satisfies_protocol(self, store):
        assert isinstance(store, RemoteMeasurementStore)
        assert store.backend_name == "http"

    def test_add_then_get(self, store):
        async def _check():
            await store.add_measurement(_m("a", 1_000))
            await store.add_measurement(_m("b", 3_000))
            await store.add_measurement(_m("c", 2_000))
            return await store.get_measurements()

        ids = [m.id for m in _run(_check())]
        assert ids == ["b", "c", "a"]

    def test_add_is_upsert(self, store, fake_api):
        async def _check():
            await store.add_measurement(_m("a", 1_000, value=90.0))
            await store.add_measurement(_m("a", 1_000, value=120.0))
            return await store.get_measurements()

        result = _run(_check())
        assert len(result) == 1
        assert result[0].value == 120.0

    def test_malformed_remote_records_skipped(self, store, fake_api):
        fake_api.records["good"] = _m("good", 1).to_dict()
        fake_api.records["bad"] = {"id": "bad", "value": "lots"}
        result = _run(store.get_measurements())
        assert [m.id for m in result] == ["good"]

    def test_delete_absent_succeeds(self, store):
        _run(store.delete_measurement("ghost"))

    def test_delete_quotes_id(self, store, fake_api):
        _run(store.delete_measurement("a/b"))
        assert fake_api.requests[-1].url.raw_path == b"/v1/measurements/a%2Fb"

    def test_no_session_fails_before_network(self, fake_api):
        store = HttpRemoteStore(fake_api.client(), SessionManager())
        with pytest.raises(AuthenticationError):
            _run(store.get_measurements())
        assert fake_api.requests == []

    def test_rejected_token(self, fake_api):
        store = HttpRemoteStore(fake_api.client(), SessionManager(AuthSession("user-1", "stale")))
        with pytest.raises(AuthenticationError):
            _run(store.get_measurements())

    @pytest.mark.parametrize(
        "status,error",
        [(400, ValidationError), (409, ConflictError), (500, RemoteResponseError)],
    )
    def test_status_mapping(self, store, fake_api, status, error):
        fake_api.fail_with = status
        with pytest.raises(error):
            _run(store.get_measurements())

    def test_server_error_carries_status(self, store, fake_api):
        fake_api.fail_with = 503
        with pytest.raises(RemoteResponseError) as excinfo:
            _run(store.get_measurements())
        assert excinfo.value.status_code == 503

    def test_offline_is_network_error(self, store, fake_api):
        fake_api.offline = True
        with pytest.raises(NetworkError):
            _run(store.add_measurement(_m("a", 1)))

    def test_non_array_body(self, session):
        client = httpx.AsyncClient(
            base_url="https://sync.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"oops": 1})),
        )
        with pytest.raises(RemoteResponseError, match="JSON array"):
            _run(HttpRemoteStore(client, session).get_measurements())

    def test_non_finite_record_skipped(self, session):
        body = (
            b'[{"id": "inf", "value": 100, "type": "fasting", "timestamp": Infinity},'
            b' {"id": "nan", "value": NaN, "type": "fasting", "timestamp": 1},'
            b' {"id": "good", "value": 100, "type": "fasting", "timestamp": 2}]'
        )
        client = httpx.AsyncClient(
            base_url="https://sync.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body)),
        )
        result = _run(HttpRemoteStore(client, session).get_measurements())
        assert [m.id for m in result] == ["good"]

    def test_invalid_json_body(self, session):
        client = httpx.AsyncClient(
            base_url="https://sync.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"<html>")),
        )
        with pytest.raises(RemoteResponseError, match="Invalid JSON"):
            _run(HttpRemoteStore(client, session).get_measurements())


class TestApiAuthClient:
    def test_register_then_login_sets_session(self, fake_api):
        session = SessionManager()
        auth = ApiAuthClient(fake_api.client(), session)

        async def _check():
            await auth.register("a@example.org", "pw")
            session.clear()
            return await auth.login("a@example.org", "pw")

        established = _run(_check())
        assert established.user_id == "user-1"
        assert established.token == "tok-1"
        assert established.expires_at is not None
        assert session.require() is established

    def test_duplicate_registration(self, fake_api):
        auth = ApiAuthClient(fake_api.client(), SessionManager())

        async def _check():
            await auth.register("a@example.org", "pw")
            await auth.register("a@example.org", "pw")

        with pytest.raises(ConflictError):
            _run(_check())

    def test_wrong_password(self, fake_api):
        fake_api.accounts["a@example.org"] = "pw"
        auth = ApiAuthClient(fake_api.client(), SessionManager())
        with pytest.raises(AuthenticationError):
            _run(auth.login("a@example.org", "nope"))

    def test_malformed_login(self, fake_api):
        auth = ApiAuthClient(fake_api.client(), SessionManager())
        with pytest.raises(ValidationError):
            _run(auth.login("", ""))

    def test_password_reset_always_succeeds(self, fake_api):
        auth = ApiAuthClient(fake_api.client(), SessionManager())
        _run(auth.request_password_reset("nobody@example.org"))

    def test_delete_account_clears_session(self, fake_api, session):
        auth = ApiAuthClient(fake_api.client(), session)
        _run(auth.delete_account())
        assert session.is_authenticated is False
