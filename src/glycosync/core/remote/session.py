"""Authenticated session holder shared by the remote adapters."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from glycosync.core.clock import now_ms
from glycosync.core.errors import AuthenticationError

logger = logging.getLogger(__name__)


@dataclass
class AuthSession:
    """Bearer token plus the user it identifies."""

    user_id: str
    token: str
    email: str = ""
    expires_at: int | None = None  # epoch ms

    def is_expired(self, at_ms: int | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (at_ms if at_ms is not None else now_ms()) >= self.expires_at

    @property
    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


class SessionManager:
    """Holds the current session; adapters call :meth:`require` before any I/O."""

    def __init__(self, session: AuthSession | None = None) -> None:
        self._session = session

    @property
    def current(self) -> AuthSession | None:
        if self._session is not None and self._session.is_expired():
            logger.info("Session for user %s expired", self._session.user_id)
            self._session = None
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self.current is not None

    def set(self, session: AuthSession) -> None:
        self._session = session
        logger.info("Session established for user %s", session.user_id)

    def clear(self) -> None:
        self._session = None

    def require(self) -> AuthSession:
        """Return the active session.

        Raises:
            AuthenticationError: If there is no valid session.
        """
        session = self.current
        if session is None or not session.token:
            raise AuthenticationError("Not signed in: an authenticated session is required")
        return session
