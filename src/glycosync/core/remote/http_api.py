"""Relational backend: REST API client for ``/v1/measurements`` and ``/v1/auth/*``.

The server is a thin parameterized-SQL wrapper over Postgres; this module
only implements its client contract.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from glycosync.core.errors import (
    AuthenticationError,
    ConflictError,
    NetworkError,
    RemoteResponseError,
    ValidationError,
)
from glycosync.core.remote.session import AuthSession, SessionManager
from glycosync.core.storage.models import Measurement

logger = logging.getLogger(__name__)


class HttpRemoteStore:
    """RemoteMeasurementStore backed by the REST API.

    Usage::

        client = httpx.AsyncClient(base_url="https://sync.example.org", timeout=15)
        store = HttpRemoteStore(client, session_manager)
        measurements = await store.get_measurements()
    """

    def __init__(self, client: httpx.AsyncClient, session: SessionManager) -> None:
        self._client = client
        self._session = session

    @property
    def backend_name(self) -> str:
        return "http"

    async def get_measurements(self) -> list[Measurement]:
        auth = self._session.require()
        response = await send_request(
            self._client, "GET", "/v1/measurements", headers=auth.authorization_header
        )
        payload = json_body(response)
        if not isinstance(payload, list):
            raise RemoteResponseError(
                f"Expected a JSON array from GET /v1/measurements, got {type(payload).__name__}",
                response.status_code,
            )

        measurements: list[Measurement] = []
        for record in payload:
            try:
                measurements.append(Measurement.from_dict(record))
            except ValidationError as exc:
                logger.warning("Skipping malformed remote measurement: %s", exc)
        measurements.sort(key=lambda m: m.timestamp, reverse=True)
        return measurements

    async def add_measurement(self, measurement: Measurement) -> Measurement:
        auth = self._session.require()
        response = await send_request(
            self._client,
            "POST",
            "/v1/measurements",
            headers=auth.authorization_header,
            json=measurement.to_dict(),
        )
        try:
            return Measurement.from_dict(json_body(response))
        except (ValidationError, RemoteResponseError):
            logger.debug("POST /v1/measurements echoed an unexpected body; keeping local copy")
            return measurement

    async def delete_measurement(self, measurement_id: str) -> None:
        auth = self._session.require()
        await send_request(
            self._client,
            "DELETE",
            f"/v1/measurements/{quote(measurement_id, safe='')}",
            headers=auth.authorization_header,
        )


class ApiAuthClient:
    """Client for the ``/v1/auth/*`` endpoints.

    Successful register/login store the session in the shared SessionManager.
    """

    def __init__(self, client: httpx.AsyncClient, session: SessionManager) -> None:
        self._client = client
        self._session = session

    async def register(self, email: str, password: str) -> AuthSession:
        """Create an account (201). 400 malformed, 409 duplicate email."""
        response = await send_request(
            self._client,
            "POST",
            "/v1/auth/register",
            json={"email": email, "password": password},
        )
        return self._store_session(response)

    async def login(self, email: str, password: str) -> AuthSession:
        """Sign in (200). 400 malformed, 401 wrong password."""
        response = await send_request(
            self._client,
            "POST",
            "/v1/auth/login",
            json={"email": email, "password": password},
        )
        return self._store_session(response)

    async def request_password_reset(self, email: str) -> None:
        """Always 204, whether or not the account exists."""
        await send_request(
            self._client, "POST", "/v1/auth/password-reset", json={"email": email}
        )

    async def delete_account(self) -> None:
        """Delete the signed-in account; the server cascades to its measurements."""
        auth = self._session.require()
        await send_request(
            self._client, "DELETE", "/v1/auth/account", headers=auth.authorization_header
        )
        self._session.clear()
        logger.warning("Account %s deleted", auth.user_id)

    def sign_out(self) -> None:
        self._session.clear()

    def _store_session(self, response: httpx.Response) -> AuthSession:
        body = json_body(response)
        if not isinstance(body, dict):
            raise RemoteResponseError("Auth response is not a JSON object", response.status_code)
        user = body.get("user") or {}
        token = body.get("token")
        user_id = user.get("id") if isinstance(user, dict) else None
        if not token or not user_id:
            raise RemoteResponseError("Auth response missing token or user id", response.status_code)
        session = AuthSession(
            user_id=str(user_id),
            token=str(token),
            email=str(user.get("email", "")),
            expires_at=_parse_expiry(body.get("expiresAt")),
        )
        self._session.set(session)
        return session


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

async def send_request(
    client: httpx.AsyncClient,
    method: str,
    path: str,
    *,
    headers: dict[str, str] | None = None,
    json: Any = None,
    params: Any = None,
) -> httpx.Response:
    """Send a request and map failures onto the sync error taxonomy.

    Raises:
        NetworkError: Connection problems and timeouts.
        AuthenticationError: 401/403.
        ValidationError: 400/422.
        ConflictError: 409.
        RemoteResponseError: Any other non-2xx status.
    """
    logger.debug("%s %s", method, path)
    try:
        response = await client.request(method, path, headers=headers, json=json, params=params)
    except httpx.TransportError as exc:
        raise NetworkError(f"{method} {path} failed: {exc}") from exc

    status = response.status_code
    if status < 400:
        return response

    message = _error_message(response)
    if status in (401, 403):
        raise AuthenticationError(f"{method} {path} rejected credentials ({status}): {message}")
    if status in (400, 422):
        raise ValidationError(f"{method} {path} rejected payload ({status}): {message}")
    if status == 409:
        raise ConflictError(f"{method} {path} conflict ({status}): {message}")
    raise RemoteResponseError(f"{method} {path} failed ({status}): {message}", status)


def json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise RemoteResponseError(
            f"Invalid JSON in response ({response.status_code}): {exc}", response.status_code
        ) from exc


def _error_message(response: httpx.Response) -> str:
    text = response.text.strip()
    return text[:200] if text else response.reason_phrase


def _parse_expiry(value: Any) -> int | None:
    """``expiresAt`` arrives as ISO 8601 or epoch ms; return epoch ms."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    if isinstance(value, str):
        try:
            return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            logger.warning("Unparseable expiresAt %r; treating session as non-expiring", value)
    return None
