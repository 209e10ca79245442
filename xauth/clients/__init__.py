"""Expose constructed client wrappers."""

from .sqlite_store import DuplicateRecordError, SQLiteStore
from .x_oauth import (
    OAuthIdentityError,
    OAuthTokenExchangeError,
    TokenGrant,
    XIdentity,
    XOAuthClient,
)

__all__ = [
    "DuplicateRecordError",
    "OAuthIdentityError",
    "OAuthTokenExchangeError",
    "SQLiteStore",
    "TokenGrant",
    "XIdentity",
    "XOAuthClient",
]
