"""
OAuth 2.0 + PKCE login flows for X.

Two front ends share one completion path: a loopback flow for a single
operator at a terminal, and a hosted pairing flow where a chat client shows
the user a short code and later polls for the result.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote

import httpx

from xauth.clients.sqlite_store import DuplicateRecordError, SQLiteStore
from xauth.clients.x_oauth import (
    OAuthIdentityError,
    OAuthTokenExchangeError,
    TokenGrant,
    XOAuthClient,
)
from xauth.core.config import AppSettings
from xauth.core.errors import FlowFailure, InvalidSessionError, OAuthFlowError
from xauth.models.records import User
from xauth.schemas.auth import (
    AuthStartResponse,
    AuthStatusResponse,
    HostedCallbackResult,
    IssuedSession,
    PairedUser,
)
from xauth.services.loopback import CallbackPage, LoopbackListener, render_page
from xauth.services.pkce import (
    generate_code_challenge,
    generate_code_verifier,
    generate_pairing_code,
    generate_state,
)
from xauth.services.scopes import canonical_scope, missing_scopes
from xauth.services.session_manager import SessionManager
from xauth.services.token_cipher import EncryptionError, TokenCipherService

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8000"
_PAIRING_CODE_ATTEMPTS = 5


class FlowState(str, Enum):
    STARTED = "started"
    CODE_RECEIVED = "code_received"
    TOKEN_EXCHANGED = "token_exchanged"
    USER_RESOLVED = "user_resolved"
    COMPLETED = "completed"
    FAILED = "failed"


_SEQUENCE = (
    FlowState.STARTED,
    FlowState.CODE_RECEIVED,
    FlowState.TOKEN_EXCHANGED,
    FlowState.USER_RESOLVED,
    FlowState.COMPLETED,
)


@dataclass
class OAuthFlow:
    """State of one login attempt."""

    kind: str
    state: FlowState = FlowState.STARTED
    error: Optional[OAuthFlowError] = None
    user: Optional[User] = None
    granted_scopes: str = ""

    @property
    def finished(self) -> bool:
        return self.state in (FlowState.COMPLETED, FlowState.FAILED)

    def advance(self, target: FlowState) -> None:
        if self.finished:
            raise ValueError(f"Flow already {self.state.value}")
        expected = _SEQUENCE[_SEQUENCE.index(self.state) + 1]
        if target is not expected:
            raise ValueError(
                f"Invalid transition {self.state.value} -> {target.value}"
            )
        logger.debug("%s flow: %s -> %s", self.kind, self.state.value, target.value)
        self.state = target

    def fail(self, reason: FlowFailure, message: str) -> OAuthFlowError:
        """Move to FAILED and return the error for the caller to raise."""
        error = OAuthFlowError(reason, message)
        if self.finished:
            return error
        logger.warning("%s flow failed (%s): %s", self.kind, reason.value, message)
        self.state = FlowState.FAILED
        self.error = error
        return error


@dataclass
class _PendingLoopback:
    flow: OAuthFlow
    code_verifier: str
    state: str
    done: asyncio.Event = field(default_factory=asyncio.Event)


class OAuthFlowController:
    """Runs loopback and hosted pairing logins against the X authorization server."""

    def __init__(
        self,
        settings: AppSettings,
        store: SQLiteStore,
        cipher: TokenCipherService,
        oauth_client: XOAuthClient,
        session_manager: SessionManager,
        *,
        listener_factory: Callable[..., LoopbackListener] = LoopbackListener,
    ) -> None:
        self._settings = settings
        self._store = store
        self._cipher = cipher
        self._oauth = oauth_client
        self._sessions = session_manager
        self._listener_factory = listener_factory
        self._listener: Optional[LoopbackListener] = None
        self._stopping: Optional[asyncio.Task] = None
        self._pending: Optional[_PendingLoopback] = None

    @property
    def base_url(self) -> str:
        return self._settings.hosted.base_url or DEFAULT_BASE_URL

    @property
    def listener(self) -> Optional[LoopbackListener]:
        return self._listener

    def requested_scopes(self, additional: Iterable[str] = ()) -> List[str]:
        scopes = [canonical_scope(scope) for scope in self._settings.x.scopes]
        for scope in additional:
            scope = canonical_scope(scope)
            if scope not in scopes:
                scopes.append(scope)
        return scopes

    # Shared completion ---------------------------------------------------

    async def _complete_login(
        self,
        flow: OAuthFlow,
        code: str,
        code_verifier: str,
        *,
        pairing_code: Optional[str] = None,
    ) -> Tuple[User, TokenGrant]:
        """Exchange ``code``, resolve the identity and persist the tokens.

        The user row, the token row and, for a hosted login, the pairing
        completion are written in a single store transaction, so a failed
        login leaves none of them behind.
        """
        try:
            grant = await self._oauth.exchange_authorization_code(code, code_verifier)
        except OAuthTokenExchangeError as exc:
            raise flow.fail(
                FlowFailure.EXCHANGE_FAILED, f"Token exchange failed: {exc}"
            ) from exc
        except httpx.HTTPError as exc:
            raise flow.fail(
                FlowFailure.NETWORK_ERROR, f"Network error during token exchange: {exc}"
            ) from exc
        flow.advance(FlowState.TOKEN_EXCHANGED)

        try:
            identity = await self._oauth.fetch_identity(grant.access_token)
        except OAuthIdentityError as exc:
            raise flow.fail(FlowFailure.IDENTITY_FAILED, str(exc)) from exc
        except httpx.HTTPError as exc:
            raise flow.fail(
                FlowFailure.NETWORK_ERROR, f"Network error fetching identity: {exc}"
            ) from exc

        try:
            access_token = self._cipher.encrypt(grant.access_token)
            refresh_token = self._cipher.encrypt(grant.refresh_token or "")
        except EncryptionError as exc:
            raise flow.fail(FlowFailure.STORAGE_FAILED, str(exc)) from exc

        granted = grant.scope or " ".join(self.requested_scopes())
        try:
            user = self._store.record_login(
                x_user_id=identity.id,
                x_username=identity.username,
                display_name=identity.name,
                granted_scopes=granted,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=datetime.now(timezone.utc) + timedelta(seconds=grant.expires_in),
                pairing_code=pairing_code,
            )
        except sqlite3.Error as exc:
            logger.exception("Could not store login for @%s", identity.username)
            raise flow.fail(
                FlowFailure.STORAGE_FAILED, "Could not save your login. Please try again."
            ) from exc
        if user is None:
            raise flow.fail(
                FlowFailure.PAIRING_ALREADY_COMPLETED,
                "Pairing session expired or was already completed",
            )
        flow.advance(FlowState.USER_RESOLVED)

        flow.user = user
        flow.granted_scopes = granted
        logger.info(
            "Stored tokens for @%s (%s)",
            user.x_username,
            self._cipher.mask_token(grant.access_token),
        )
        self._warn_missing_scopes(user, granted)
        return user, grant

    def _warn_missing_scopes(self, user: User, granted: str) -> None:
        missing = missing_scopes(granted, self.requested_scopes())
        if missing:
            logger.warning(
                "User @%s did not grant requested scopes: %s",
                user.x_username,
                ", ".join(missing),
            )

    # Loopback ------------------------------------------------------------

    async def start_loopback_auth(
        self, additional_scopes: Sequence[str] = ()
    ) -> AuthStartResponse:
        """Begin a loopback login; a pending one is replaced."""
        code_verifier = generate_code_verifier()
        state = generate_state()
        authorize_url = self._oauth.build_authorization_url(
            code_challenge=generate_code_challenge(code_verifier),
            state=state,
            scopes=self.requested_scopes(additional_scopes),
        )

        previous = self._pending
        if previous is not None and not previous.flow.finished:
            previous.flow.fail(
                FlowFailure.SUPERSEDED, "Replaced by a newer login attempt"
            )
            previous.done.set()

        await self._ensure_listener()
        self._pending = _PendingLoopback(
            flow=OAuthFlow(kind="loopback"), code_verifier=code_verifier, state=state
        )
        logger.info("Started loopback login")
        return AuthStartResponse(authorize_url=authorize_url)

    async def _ensure_listener(self) -> None:
        if self._listener is not None and self._listener.running:
            return
        if self._stopping is not None:
            await self._stopping
            self._stopping = None
        self._listener = self._listener_factory(
            self.handle_loopback_callback, port=self._settings.x.redirect_port
        )
        await self._listener.start()

    async def wait_for_loopback(self, timeout: Optional[float] = None) -> User:
        """Wait for the current loopback flow and return the logged-in user."""
        pending = self._pending
        if pending is None:
            raise RuntimeError("No loopback login in progress")
        await asyncio.wait_for(pending.done.wait(), timeout)
        if pending.flow.error is not None:
            raise pending.flow.error
        if pending.flow.user is None:
            raise RuntimeError("Loopback login finished without a user")
        return pending.flow.user

    async def handle_loopback_callback(
        self, code: Optional[str], state: Optional[str], error: Optional[str]
    ) -> CallbackPage:
        pending = self._pending
        if pending is None or pending.flow.finished:
            return render_page(
                "Authentication Failed", "No login is in progress.", status_code=400
            )
        flow = pending.flow
        try:
            if error:
                raise flow.fail(
                    FlowFailure.PROVIDER_DENIED, f"Authorization denied: {error}"
                )
            if not code:
                raise flow.fail(FlowFailure.MISSING_CODE, "No authorization code received")
            if state != pending.state:
                raise flow.fail(
                    FlowFailure.STATE_MISMATCH, "State mismatch - possible CSRF attack"
                )
            flow.advance(FlowState.CODE_RECEIVED)
            user, _ = await self._complete_login(flow, code, pending.code_verifier)
            flow.advance(FlowState.COMPLETED)
        except OAuthFlowError as exc:
            page = render_page("Authentication Failed", exc.message, status_code=400)
        else:
            page = render_page(
                "Authentication Successful",
                f"Logged in as @{user.x_username}. You can close this window.",
            )
        finally:
            self._finish_loopback(pending)
        return page

    def _finish_loopback(self, pending: _PendingLoopback) -> None:
        if not pending.flow.finished:
            pending.flow.fail(FlowFailure.STORAGE_FAILED, "Login did not complete")
        pending.done.set()
        if self._listener is not None:
            self._listener.request_stop()
            # The in-flight response finishes before the socket closes.
            self._stopping = asyncio.get_running_loop().create_task(self._listener.stop())
            self._listener = None

    # Hosted pairing ------------------------------------------------------

    def start_hosted_auth(self) -> AuthStartResponse:
        """Create a pairing session and return the code and login link."""
        code_verifier = generate_code_verifier()
        state = generate_state()
        expires_at = datetime.now(timezone.utc) + timedelta(
            minutes=self._settings.storage.pairing_ttl_minutes
        )
        for attempt in range(_PAIRING_CODE_ATTEMPTS):
            pairing_code = generate_pairing_code()
            try:
                self._store.create_pairing_session(
                    pairing_code, code_verifier, state, expires_at
                )
                break
            except DuplicateRecordError:
                logger.debug("Pairing code collision on attempt %d", attempt + 1)
        else:
            raise RuntimeError("Could not allocate a unique pairing code")

        login_url = f"{self.base_url}/api/auth/login?pairing_code={quote(pairing_code)}"
        logger.info("Started hosted pairing %s", pairing_code)
        return AuthStartResponse(pairing_code=pairing_code, login_url=login_url)

    def build_hosted_authorization_url(
        self, pairing_code: str, additional_scopes: Sequence[str] = ()
    ) -> str:
        pairing = self._store.get_pairing_session(pairing_code)
        if pairing is None:
            raise OAuthFlowError(
                FlowFailure.PAIRING_EXPIRED, "Invalid or expired pairing code"
            )
        if pairing.completed:
            raise OAuthFlowError(
                FlowFailure.PAIRING_ALREADY_COMPLETED, "Pairing code was already used"
            )
        return self._oauth.build_authorization_url(
            code_challenge=generate_code_challenge(pairing.code_verifier),
            state=pairing.state,
            scopes=self.requested_scopes(additional_scopes),
        )

    async def handle_hosted_callback(
        self, code: Optional[str], state: Optional[str], error: Optional[str] = None
    ) -> HostedCallbackResult:
        flow = OAuthFlow(kind="hosted")
        if error:
            raise flow.fail(FlowFailure.PROVIDER_DENIED, f"Authorization denied: {error}")
        if not code:
            raise flow.fail(FlowFailure.MISSING_CODE, "No authorization code received")
        if not state:
            raise flow.fail(FlowFailure.STATE_MISMATCH, "Missing state parameter")

        pairing = self._store.get_pairing_session_by_state(state)
        if pairing is None:
            raise flow.fail(
                FlowFailure.PAIRING_EXPIRED, "Invalid or expired pairing session"
            )
        if pairing.completed:
            raise flow.fail(
                FlowFailure.PAIRING_ALREADY_COMPLETED, "Pairing session already completed"
            )
        flow.advance(FlowState.CODE_RECEIVED)

        user, _ = await self._complete_login(
            flow, code, pairing.code_verifier, pairing_code=pairing.pairing_code
        )
        flow.advance(FlowState.COMPLETED)
        logger.info("Pairing %s verified for @%s", pairing.pairing_code, user.x_username)
        return HostedCallbackResult(
            user_id=user.id,
            pairing_code=pairing.pairing_code,
            x_username=user.x_username,
            granted_scopes=flow.granted_scopes,
        )

    def check_pairing_status(self, pairing_code: str) -> AuthStatusResponse:
        pairing = self._store.get_pairing_session(pairing_code)
        if pairing is None or not pairing.completed or pairing.user_id is None:
            return AuthStatusResponse(verified=False)
        user = self._store.get_user_by_id(pairing.user_id)
        if user is None:
            return AuthStatusResponse(verified=False)
        return AuthStatusResponse(
            verified=True,
            user=PairedUser(
                id=user.id, display_name=user.display_name, x_username=user.x_username
            ),
        )

    def claim_pairing_session(self, pairing_code: str) -> IssuedSession:
        """Exchange a verified pairing code for a session, exactly once."""
        status = self.check_pairing_status(pairing_code)
        if not status.verified or status.user is None:
            raise InvalidSessionError("Pairing code is not verified")
        if not self._store.delete_pairing_session(pairing_code):
            raise InvalidSessionError("Pairing code was already claimed")
        expires_at = datetime.now(timezone.utc) + timedelta(
            days=self._settings.storage.session_ttl_days
        )
        return self._sessions.create_session(status.user.id, expires_at)

    # Lifecycle -----------------------------------------------------------

    def cleanup_expired(self) -> Tuple[int, int]:
        sessions = self._sessions.cleanup_expired_sessions()
        pairings = self._store.cleanup_expired_pairing_sessions()
        return sessions, pairings

    async def shutdown(self) -> None:
        pending = self._pending
        if pending is not None:
            pending.flow.fail(FlowFailure.SHUTDOWN, "Login controller shut down")
            pending.done.set()
        if self._listener is not None:
            await self._listener.stop()
            self._listener = None
        if self._stopping is not None:
            await self._stopping
            self._stopping = None


__all__ = ["FlowState", "OAuthFlow", "OAuthFlowController"]
