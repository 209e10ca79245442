"""
Helpers for retrieving, scope-checking and refreshing per-user X OAuth tokens.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Optional, Sequence, Tuple
from urllib.parse import quote

import httpx

from xauth.clients.sqlite_store import SQLiteStore
from xauth.clients.x_oauth import OAuthTokenExchangeError, XOAuthClient
from xauth.core.config import HostedSettings
from xauth.core.errors import ReauthRequired, ScopeInsufficient
from xauth.models.records import User, UserToken
from xauth.schemas.auth import TokenInfo, TokenStatus, TokenValidation
from xauth.services.scopes import missing_scopes, required_scopes_for_tool
from xauth.services.token_cipher import (
    DecryptionError,
    EncryptionError,
    TokenCipherService,
)

logger = logging.getLogger(__name__)

LOCAL_LOGIN_HINT = "Run `xauth-login` to authenticate."


class TokenManager:
    """Hands out valid, sufficiently scoped access tokens for a user."""

    _REFRESH_WINDOW = timedelta(seconds=60)

    def __init__(
        self,
        store: SQLiteStore,
        cipher: TokenCipherService,
        oauth_client: XOAuthClient,
        hosted_settings: HostedSettings,
    ) -> None:
        self._store = store
        self._cipher = cipher
        self._oauth = oauth_client
        self._hosted = hosted_settings
        self._refresh_locks: Dict[int, asyncio.Lock] = {}

    def login_url(self) -> str:
        if self._hosted.enabled and self._hosted.base_url:
            return f"{self._hosted.base_url}/api/auth/start"
        return LOCAL_LOGIN_HINT

    def reauth_url(self, scopes: Sequence[str]) -> str:
        if self._hosted.enabled and self._hosted.base_url:
            return (
                f"{self._hosted.base_url}/api/auth/start"
                f"?additional_scopes={quote(','.join(scopes))}"
            )
        return f"Re-authenticate with additional scopes: {', '.join(scopes)}"

    def _needs_refresh(self, expires_at: datetime) -> bool:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) >= expires_at - self._REFRESH_WINDOW

    def _load_tokens(self, user: User) -> Tuple[UserToken, str, str]:
        record = self._store.get_user_tokens(user.id)
        if record is None:
            raise ReauthRequired(
                f"No tokens found for user @{user.x_username}. Please authenticate.",
                login_url=self.login_url(),
            )

        try:
            access_token = self._cipher.decrypt(record.access_token)
            refresh_token = self._cipher.decrypt(record.refresh_token)
        except DecryptionError as exc:
            logger.error("Failed to decrypt tokens for user %s: %s", user.id, exc)
            raise ReauthRequired(
                "Token decryption failed. Please re-authenticate.",
                login_url=self.login_url(),
            ) from exc
        return record, access_token, refresh_token

    async def get_valid_access_token(
        self, user: User, required_scopes: Optional[Iterable[str]] = None
    ) -> str:
        """Return a usable access token for ``user``, refreshing when necessary."""
        record, access_token, _ = self._load_tokens(user)

        if required_scopes is not None:
            missing = missing_scopes(record.granted_scopes, required_scopes)
            if missing:
                raise ScopeInsufficient(
                    f"Missing required scopes: {', '.join(missing)}",
                    login_url=self.reauth_url(missing),
                    missing_scopes=missing,
                )

        if self._needs_refresh(record.expires_at):
            access_token = await self._refresh_serialized(user)

        return access_token

    async def validate_tool_access(self, user: User, tool_name: str) -> str:
        return await self.get_valid_access_token(
            user, required_scopes_for_tool(tool_name)
        )

    async def _refresh_serialized(self, user: User) -> str:
        """Refresh under the user's lock; a waiter reuses the winner's tokens."""
        lock = self._refresh_locks.setdefault(user.id, asyncio.Lock())
        async with lock:
            record, access_token, refresh_token = self._load_tokens(user)
            if not self._needs_refresh(record.expires_at):
                return access_token
            logger.info(
                "Refreshing access token for user @%s (%s)",
                user.x_username,
                self._cipher.mask_token(access_token),
            )
            return await self._refresh_tokens(user, record, refresh_token)

    async def _refresh_tokens(
        self, user: User, record: UserToken, refresh_token: str
    ) -> str:
        # Not retried: any failure here surfaces as ReauthRequired.
        refreshed_at = datetime.now(timezone.utc)
        try:
            grant = await self._oauth.refresh_token(refresh_token)
        except OAuthTokenExchangeError as exc:
            logger.error("Token refresh failed for user @%s: %s", user.x_username, exc)
            # Only a row still holding the rejected refresh token is removed.
            self._store.delete_user_tokens(user.id, refresh_token=record.refresh_token)
            raise ReauthRequired(
                "Token refresh failed. Please re-authenticate.",
                login_url=self.login_url(),
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "Network error during token refresh for user @%s: %s",
                user.x_username,
                exc,
            )
            raise ReauthRequired(
                "Network error during token refresh. Please try again or re-authenticate.",
                login_url=self.login_url(),
            ) from exc

        try:
            updated = UserToken(
                user_id=user.id,
                x_user_id=record.x_user_id,
                granted_scopes=grant.scope or record.granted_scopes,
                access_token=self._cipher.encrypt(grant.access_token),
                refresh_token=self._cipher.encrypt(grant.refresh_token or refresh_token),
                expires_at=refreshed_at + timedelta(seconds=grant.expires_in),
            )
        except EncryptionError as exc:
            raise ReauthRequired(
                "Unable to store refreshed tokens. Please re-authenticate.",
                login_url=self.login_url(),
            ) from exc
        self._store.save_user_tokens(updated)
        logger.info("Tokens refreshed and stored for user @%s", user.x_username)
        return grant.access_token

    def get_user_token_info(self, user: User) -> TokenInfo:
        """Diagnostic view of stored tokens; never raises."""
        record = self._store.get_user_tokens(user.id)
        if record is None:
            return TokenInfo(has_tokens=False)
        try:
            access_token = self._cipher.decrypt(record.access_token)
        except DecryptionError:
            return TokenInfo(has_tokens=False)
        return TokenInfo(
            has_tokens=True,
            scopes=record.scope_list,
            expires_at=record.expires_at,
            masked_token=self._cipher.mask_token(access_token),
        )

    def validate_user_tokens(
        self, user: User, tool_name: Optional[str] = None
    ) -> TokenValidation:
        """Health check for a user's tokens; never raises."""
        record = self._store.get_user_tokens(user.id)
        if record is None:
            return TokenValidation(
                valid=False, status=TokenStatus.MISSING, reason="No tokens found"
            )
        try:
            self._cipher.decrypt(record.access_token)
        except DecryptionError:
            return TokenValidation(
                valid=False,
                status=TokenStatus.CORRUPTED,
                reason="Token decryption failed",
            )

        expired = self._needs_refresh(record.expires_at)
        missing: list[str] = []
        if tool_name:
            missing = missing_scopes(
                record.granted_scopes, required_scopes_for_tool(tool_name)
            )

        if expired and missing:
            return TokenValidation(
                valid=False,
                status=TokenStatus.EXPIRED_AND_SCOPE_INSUFFICIENT,
                reason="Token expired and missing scopes",
                missing_scopes=missing,
                expires_at=record.expires_at,
            )
        if expired:
            return TokenValidation(
                valid=False,
                status=TokenStatus.EXPIRED,
                reason="Token expired",
                expires_at=record.expires_at,
            )
        if missing:
            return TokenValidation(
                valid=False,
                status=TokenStatus.SCOPE_INSUFFICIENT,
                reason="Missing required scopes",
                missing_scopes=missing,
                expires_at=record.expires_at,
            )
        return TokenValidation(
            valid=True, status=TokenStatus.VALID, expires_at=record.expires_at
        )

    def clear_user_tokens(self, user_id: int) -> None:
        self._store.delete_user_tokens(user_id)
        logger.info("Cleared tokens for user %s", user_id)


__all__ = ["LOCAL_LOGIN_HINT", "TokenManager"]
