"""
X OAuth 2.0 utilities.

These helpers build PKCE authorization URLs, exchange authorization codes,
refresh tokens and resolve the identity behind an access token.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence
from urllib.parse import urlencode

import httpx

from xauth.core.config import XSettings


class OAuthTokenExchangeError(Exception):
    """Raised when the token endpoint returns an error."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class OAuthIdentityError(Exception):
    """Raised when the identity endpoint rejects the token or returns bad data."""


@dataclass(slots=True)
class TokenGrant:
    """Tokens issued by the token endpoint."""

    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


@dataclass(slots=True)
class XIdentity:
    id: str
    username: str
    name: str


class XOAuthClient:
    """Build X authorization URLs and talk to the token and identity endpoints."""

    AUTH_BASE_URL = "https://x.com/i/oauth2/authorize"
    TOKEN_URL = "https://api.x.com/2/oauth2/token"
    IDENTITY_URL = "https://api.x.com/2/users/me"

    def __init__(
        self,
        x_settings: XSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ) -> None:
        self._x = x_settings
        self._transport = transport
        self._timeout = timeout

    @property
    def redirect_uri(self) -> str:
        return str(self._x.redirect_uri)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _basic_auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self._x.client_id, self._x.client_secret)

    def build_authorization_url(
        self,
        *,
        code_challenge: str,
        state: str,
        scopes: Optional[Sequence[str]] = None,
    ) -> str:
        """Construct the X consent URL for a PKCE (S256) authorization request."""
        params = {
            "response_type": "code",
            "client_id": self._x.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(scopes or self._x.scopes),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{self.AUTH_BASE_URL}?{urlencode(params)}"

    async def _post_token(self, payload: Dict[str, str]) -> Dict[str, Any]:
        async with self._client() as client:
            response = await client.post(
                self.TOKEN_URL, data=payload, auth=self._basic_auth()
            )

        if response.status_code != httpx.codes.OK:
            raise OAuthTokenExchangeError(
                response.text, status_code=response.status_code
            )
        try:
            return response.json()
        except ValueError as exc:
            raise OAuthTokenExchangeError(
                "Token endpoint returned a non-JSON body.",
                status_code=response.status_code,
            ) from exc

    @staticmethod
    def _parse_grant(token_payload: Dict[str, Any]) -> TokenGrant:
        access_token = token_payload.get("access_token")
        expires_in = token_payload.get("expires_in")
        if not access_token or not expires_in:
            raise OAuthTokenExchangeError("Incomplete token payload returned from X.")
        return TokenGrant(
            access_token=access_token,
            expires_in=int(expires_in),
            refresh_token=token_payload.get("refresh_token"),
            scope=token_payload.get("scope"),
        )

    async def exchange_authorization_code(
        self, code: str, code_verifier: str
    ) -> TokenGrant:
        """
        Exchange an authorization code and its PKCE verifier for tokens.

        Network failures propagate as ``httpx.HTTPError``.
        """
        token_payload = await self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
                "code_verifier": code_verifier,
                "client_id": self._x.client_id,
            }
        )
        grant = self._parse_grant(token_payload)
        if not grant.refresh_token:
            raise OAuthTokenExchangeError(
                "X did not return a refresh token; is offline.access granted?"
            )
        return grant

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        """Refresh the access token using a stored refresh token."""
        token_payload = await self._post_token(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._x.client_id,
            }
        )
        return self._parse_grant(token_payload)

    async def fetch_identity(self, access_token: str) -> XIdentity:
        """Resolve the X account that owns ``access_token``."""
        async with self._client() as client:
            response = await client.get(
                self.IDENTITY_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )

        if response.status_code != httpx.codes.OK:
            raise OAuthIdentityError(f"Failed to fetch user info: {response.text}")
        try:
            data = response.json().get("data")
        except ValueError as exc:
            raise OAuthIdentityError("Identity endpoint returned a non-JSON body.") from exc
        if not data or not data.get("id") or not data.get("username"):
            raise OAuthIdentityError("Invalid user data response.")
        return XIdentity(
            id=str(data["id"]),
            username=data["username"],
            name=data.get("name") or data["username"],
        )


__all__ = [
    "OAuthIdentityError",
    "OAuthTokenExchangeError",
    "TokenGrant",
    "XIdentity",
    "XOAuthClient",
]
