"""
Authentication error taxonomy.

Every error a caller of the credential broker can observe is one of the
classes below, so glue code can present an actionable next step (a login
URL, the missing scopes) without inspecting internals.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Sequence


class AuthErrorCode(str, Enum):
    REAUTH_REQUIRED = "auth_reauth_required"
    SCOPE_INSUFFICIENT = "auth_scope_insufficient"
    INVALID_SESSION = "auth_invalid_session"


class AuthError(Exception):
    """Base class for auth-class errors surfaced to callers."""

    code: AuthErrorCode

    def __init__(
        self,
        message: str,
        *,
        login_url: Optional[str] = None,
        missing_scopes: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.login_url = login_url
        self.missing_scopes: List[str] = list(missing_scopes or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "login_url": self.login_url,
            "missing_scopes": self.missing_scopes,
        }

    def describe(self) -> str:
        """Render a human-readable message including the next step."""
        lines = [self.message]
        if self.login_url:
            lines.append(f"Login URL: {self.login_url}")
        if self.missing_scopes:
            lines.append(f"Missing scopes: {', '.join(self.missing_scopes)}")
        return "\n".join(lines)


class ReauthRequired(AuthError):
    """No usable tokens for the user; a new OAuth flow must be started."""

    code = AuthErrorCode.REAUTH_REQUIRED


class ScopeInsufficient(AuthError):
    """Tokens are valid but were granted without the scopes an operation needs."""

    code = AuthErrorCode.SCOPE_INSUFFICIENT


class InvalidSessionError(AuthError):
    """The transport credential does not resolve to a user."""

    code = AuthErrorCode.INVALID_SESSION

    def __init__(self, message: str = "Invalid or expired session") -> None:
        super().__init__(message)


class FlowFailure(str, Enum):
    """Reasons an OAuth flow transitions to FAILED."""

    STATE_MISMATCH = "state_mismatch"
    PROVIDER_DENIED = "provider_denied"
    MISSING_CODE = "missing_code"
    EXCHANGE_FAILED = "exchange_failed"
    IDENTITY_FAILED = "identity_failed"
    NETWORK_ERROR = "network_error"
    PAIRING_EXPIRED = "pairing_expired"
    PAIRING_ALREADY_COMPLETED = "pairing_already_completed"
    STORAGE_FAILED = "storage_failed"
    SUPERSEDED = "superseded"
    SHUTDOWN = "shutdown"


class OAuthFlowError(Exception):
    """Raised when an OAuth flow fails at any step."""

    def __init__(self, reason: FlowFailure, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


__all__ = [
    "AuthError",
    "AuthErrorCode",
    "FlowFailure",
    "InvalidSessionError",
    "OAuthFlowError",
    "ReauthRequired",
    "ScopeInsufficient",
]
