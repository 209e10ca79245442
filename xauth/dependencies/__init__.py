"""Expose dependency helpers for FastAPI routers and CLI scripts."""

from .clients import (
    get_app_settings,
    get_oauth_flow_controller,
    get_session_manager,
    get_sqlite_store,
    get_token_cipher_service,
    get_token_manager,
    get_x_oauth_client,
)
from .session import get_current_user, get_session_context

__all__ = [
    "get_app_settings",
    "get_current_user",
    "get_oauth_flow_controller",
    "get_session_context",
    "get_session_manager",
    "get_sqlite_store",
    "get_token_cipher_service",
    "get_token_manager",
    "get_x_oauth_client",
]
