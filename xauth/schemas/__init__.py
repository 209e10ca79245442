"""Pydantic schemas for OAuth flows, sessions and token diagnostics."""

from .auth import (
    AuthStartResponse,
    AuthStatusResponse,
    ClaimSessionRequest,
    HostedCallbackResult,
    IssuedSession,
    PairedUser,
    SessionContext,
    TokenInfo,
    TokenStatus,
    TokenValidation,
)

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
