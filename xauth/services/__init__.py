"""Service layer exports."""

from .loopback import LoopbackListener
from .oauth_flow import FlowState, OAuthFlow, OAuthFlowController
from .session_manager import LOCAL_USER_ID, SessionManager
from .token_cipher import (
    DecryptionError,
    EncryptionError,
    TokenCipherService,
    resolve_encryption_key,
)
from .token_manager import TokenManager

__all__ = [
    "DecryptionError",
    "EncryptionError",
    "FlowState",
    "LOCAL_USER_ID",
    "LoopbackListener",
    "OAuthFlow",
    "OAuthFlowController",
    "SessionManager",
    "TokenCipherService",
    "TokenManager",
    "resolve_encryption_key",
]
