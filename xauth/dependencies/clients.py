"""
Factory functions to provide shared clients and services as FastAPI dependencies.

The same factories back the CLI scripts, so every entry point shares one
store, one cipher and one flow controller per process.
"""

from functools import lru_cache

from xauth.clients import SQLiteStore, XOAuthClient
from xauth.core.config import AppSettings, get_settings
from xauth.services import (
    OAuthFlowController,
    SessionManager,
    TokenCipherService,
    TokenManager,
    resolve_encryption_key,
)


@lru_cache()
def get_app_settings() -> AppSettings:
    """FastAPI dependency returning application settings."""
    return get_settings()


@lru_cache()
def get_sqlite_store() -> SQLiteStore:
    """Provide the shared credential store."""
    settings = get_app_settings()
    return SQLiteStore(settings.storage.db_path)


@lru_cache()
def get_token_cipher_service() -> TokenCipherService:
    """Provide symmetric encryption helper for token storage."""
    security = get_app_settings().security
    key = resolve_encryption_key(
        env_key=security.encryption_key,
        key_path=security.key_path,
        keyring_service=security.keyring_service,
        use_keyring=security.use_keyring,
    )
    return TokenCipherService(key=key)


@lru_cache()
def get_x_oauth_client() -> XOAuthClient:
    """Create a singleton X OAuth client."""
    return XOAuthClient(get_app_settings().x)


@lru_cache()
def get_session_manager() -> SessionManager:
    return SessionManager(get_sqlite_store(), get_token_cipher_service())


@lru_cache()
def get_token_manager() -> TokenManager:
    """Provide helper for handing out valid X access tokens."""
    return TokenManager(
        store=get_sqlite_store(),
        cipher=get_token_cipher_service(),
        oauth_client=get_x_oauth_client(),
        hosted_settings=get_app_settings().hosted,
    )


@lru_cache()
def get_oauth_flow_controller() -> OAuthFlowController:
    return OAuthFlowController(
        settings=get_app_settings(),
        store=get_sqlite_store(),
        cipher=get_token_cipher_service(),
        oauth_client=get_x_oauth_client(),
        session_manager=get_session_manager(),
    )


__all__ = [
    "get_app_settings",
    "get_oauth_flow_controller",
    "get_session_manager",
    "get_sqlite_store",
    "get_token_cipher_service",
    "get_token_manager",
    "get_x_oauth_client",
]
