"""
Resolution of transport-supplied session credentials to users.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from xauth.clients.sqlite_store import DuplicateRecordError, SQLiteStore
from xauth.core.errors import InvalidSessionError
from xauth.models.records import Session, User, UserStats
from xauth.schemas.auth import IssuedSession, SessionContext
from xauth.services.token_cipher import TokenCipherService

logger = logging.getLogger(__name__)

LOCAL_USER_ID = "local_user"
LOCAL_SESSION_TTL = timedelta(days=365)

_COOKIE_PATTERN = re.compile(r"(?:^|;\s*)session=([^;]+)")


def _split_credential(value: str) -> SessionContext:
    session_id, _, session_secret = value.strip().partition(":")
    return SessionContext(
        session_id=session_id or None,
        session_secret=session_secret or None,
    )


def _headers_of(request: Any) -> Mapping[str, str]:
    if request is None:
        return {}
    # Starlette requests are Mappings over the ASGI scope, so check the
    # attribute before treating the request as a plain dict.
    headers = getattr(request, "headers", None)
    if headers is not None:
        return headers
    if isinstance(request, Mapping):
        meta = request.get("meta")
        if isinstance(meta, Mapping):
            return meta.get("headers") or {}
        return request.get("headers") or {}
    return {}


class SessionManager:
    """Maps session credentials to users and owns the bootstrap local user."""

    def __init__(self, store: SQLiteStore, cipher: TokenCipherService) -> None:
        self._store = store
        self._cipher = cipher
        self._default_user_id = self._ensure_local_user().id

    def _ensure_local_user(self) -> User:
        user = self._store.get_user_by_x_user_id(LOCAL_USER_ID)
        if user:
            return user
        try:
            user = self._store.create_user(LOCAL_USER_ID, LOCAL_USER_ID, "Local User")
        except DuplicateRecordError:
            # Another process created it between our read and insert.
            user = self._store.get_user_by_x_user_id(LOCAL_USER_ID)
            if user is None:
                raise
            return user
        logger.info("Created default local user with id %s", user.id)
        return user

    @property
    def default_user_id(self) -> int:
        return self._default_user_id

    def create_session(
        self, user_id: int, expires_at: Optional[datetime] = None
    ) -> IssuedSession:
        """Persist a new session and return its secret exactly once."""
        session_id = str(uuid.uuid4())
        session_secret = self._cipher.generate_secure_token()
        secret_hash, salt = self._cipher.hash_password(session_secret)
        session = self._store.create_session(
            user_id, session_id, f"{secret_hash}:{salt}", expires_at
        )
        logger.info("Created session %s for user %s", session_id, user_id)
        return IssuedSession(
            session_id=session.id,
            session_secret=session_secret,
            expires_at=session.expires_at,
        )

    def create_local_session(self, user_id: Optional[int] = None) -> IssuedSession:
        """Issue a long-lived session for CLI tools, defaulting to the local user."""
        target = user_id or self._default_user_id
        return self.create_session(target, datetime.now(timezone.utc) + LOCAL_SESSION_TTL)

    def _verify_secret(self, secret: str, stored: str) -> bool:
        secret_hash, sep, salt = stored.partition(":")
        if not sep or not salt:
            return False
        return self._cipher.verify_password(secret, secret_hash, salt)

    def validate_session(
        self, session_id: str, session_secret: Optional[str] = None
    ) -> Optional[Session]:
        """Return the live session for ``session_id``.

        Without a secret, trust is delegated to the transport (stdio and other
        local channels). With a secret, it must match the stored hash.
        """
        session = self._store.get_session(session_id)
        if session is None:
            return None
        if session_secret is None:
            return session
        if not self._verify_secret(session_secret, session.session_secret_hash):
            logger.warning("Session secret mismatch for session %s", session_id)
            return None
        return session

    def get_user_from_session(
        self,
        session_id: Optional[str] = None,
        session_secret: Optional[str] = None,
    ) -> Optional[User]:
        if not session_id:
            return self._store.get_user_by_id(self._default_user_id)
        session = self.validate_session(session_id, session_secret)
        if session is None:
            return None
        return self._store.get_user_by_id(session.user_id)

    def require_user(
        self,
        session_id: Optional[str] = None,
        session_secret: Optional[str] = None,
    ) -> User:
        user = self.get_user_from_session(session_id, session_secret)
        if user is None:
            raise InvalidSessionError()
        return user

    def require_user_for(self, context: SessionContext) -> User:
        return self.require_user(context.session_id, context.session_secret)

    @staticmethod
    def extract_session_context(request: Any) -> SessionContext:
        """Map transport carriers to a canonical ``SessionContext``.

        Looks at, in order: an ``Authorization: Bearer <id>:<secret>`` header,
        a ``session=<id>:<secret>`` cookie, then ``x-session-id`` and
        ``x-session-secret`` headers. A request with none of these (for
        example a stdio call) yields an empty context.
        """
        headers = {str(key).lower(): value for key, value in _headers_of(request).items()}

        authorization = headers.get("authorization")
        if authorization and authorization.startswith("Bearer "):
            return _split_credential(authorization[len("Bearer "):])

        cookie = headers.get("cookie")
        if cookie:
            match = _COOKIE_PATTERN.search(cookie)
            if match:
                return _split_credential(match.group(1))

        return SessionContext(
            session_id=headers.get("x-session-id") or None,
            session_secret=headers.get("x-session-secret") or None,
        )

    def delete_session(self, session_id: str) -> None:
        self._store.delete_session(session_id)
        logger.info("Deleted session %s", session_id)

    def cleanup_expired_sessions(self) -> int:
        return self._store.cleanup_expired_sessions()

    def list_users(self) -> list[User]:
        return self._store.list_users()

    def get_user_stats(self, user_id: int) -> UserStats:
        return self._store.get_user_stats(user_id)


__all__ = ["LOCAL_USER_ID", "SessionManager"]
