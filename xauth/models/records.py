"""
Domain models for the rows held by the persistent store.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class User(BaseModel):
    """One authenticated X identity."""

    id: int
    created_at: datetime
    x_user_id: str = Field(..., description="Immutable X account identifier.")
    x_username: str
    display_name: str


class Session(BaseModel):
    """A caller's time-bounded binding to a user."""

    id: str
    user_id: int
    created_at: datetime
    expires_at: datetime
    session_secret_hash: str = Field(
        ..., description="PBKDF2 hash of the session secret, stored as 'hash:salt'."
    )


class UserToken(BaseModel):
    """Encrypted OAuth tokens for a user; at most one row per user."""

    user_id: int
    provider: str = "x"
    x_user_id: str
    granted_scopes: str = Field(..., description="Space-delimited granted scopes.")
    access_token: str = Field(..., description="Encrypted access token.")
    refresh_token: str = Field(..., description="Encrypted refresh token.")
    expires_at: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def scope_list(self) -> list[str]:
        return self.granted_scopes.split()


class PairingSession(BaseModel):
    """A one-time handshake context for the hosted login flow."""

    pairing_code: str
    created_at: datetime
    expires_at: datetime
    code_verifier: str
    state: str
    user_id: Optional[int] = None
    completed: bool = False


class UserStats(BaseModel):
    session_count: int = 0
    last_activity: Optional[datetime] = None
    has_tokens: bool = False


__all__ = ["PairingSession", "Session", "User", "UserStats", "UserToken"]
