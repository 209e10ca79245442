"""Schemas exchanged with callers of the OAuth flows and token diagnostics."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class AuthStartResponse(BaseModel):
    """Result of starting either login flow."""

    authorize_url: Optional[str] = Field(
        None, description="Provider URL to open for the loopback flow."
    )
    pairing_code: Optional[str] = Field(
        None, description="Code identifying a hosted pairing attempt."
    )
    login_url: Optional[str] = Field(
        None, description="Hosted login link embedding the pairing code."
    )


class PairedUser(BaseModel):
    id: int
    display_name: str
    x_username: str


class AuthStatusResponse(BaseModel):
    """Poll result for a hosted pairing code."""

    verified: bool
    user: Optional[PairedUser] = None


class HostedCallbackResult(BaseModel):
    user_id: int
    pairing_code: str
    x_username: str
    granted_scopes: str


class IssuedSession(BaseModel):
    """Session credentials; the secret is only ever returned here."""

    session_id: str
    session_secret: str
    expires_at: datetime

    @property
    def bearer_token(self) -> str:
        return f"{self.session_id}:{self.session_secret}"


class SessionContext(BaseModel):
    """Canonical session credential pair extracted from a transport request."""

    session_id: Optional[str] = None
    session_secret: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.session_id


class TokenInfo(BaseModel):
    """Diagnostic view of a user's stored tokens. Never contains a full secret."""

    has_tokens: bool
    scopes: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    masked_token: Optional[str] = None


class TokenStatus(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    SCOPE_INSUFFICIENT = "scope_insufficient"
    EXPIRED_AND_SCOPE_INSUFFICIENT = "expired_and_scope_insufficient"
    MISSING = "missing"
    CORRUPTED = "corrupted"


class TokenValidation(BaseModel):
    """Structured health verdict for a user's tokens."""

    valid: bool
    status: TokenStatus
    reason: Optional[str] = None
    missing_scopes: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None


class ClaimSessionRequest(BaseModel):
    pairing_code: str = Field(..., min_length=1)


__all__ = [
    "AuthStartResponse",
    "AuthStatusResponse",
    "ClaimSessionRequest",
    "HostedCallbackResult",
    "IssuedSession",
    "PairedUser",
    "SessionContext",
    "TokenInfo",
    "TokenStatus",
    "TokenValidation",
]
