"""
Resolve the calling user from the request's session credentials.
"""

from typing import Annotated

from fastapi import Depends, Request

from xauth.core.errors import InvalidSessionError
from xauth.models.records import User
from xauth.schemas.auth import SessionContext
from xauth.services import SessionManager

from .clients import get_session_manager


def get_session_context(request: Request) -> SessionContext:
    return SessionManager.extract_session_context(request)


def get_current_user(
    context: Annotated[SessionContext, Depends(get_session_context)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
) -> User:
    """Over HTTP both the session id and its secret are mandatory.

    The transport-trust path of ``validate_session`` (no secret) and the
    local-user default are reserved for in-process callers.
    """
    if not context.session_id or not context.session_secret:
        raise InvalidSessionError("Session id and secret are required")
    return sessions.require_user_for(context)


__all__ = ["get_current_user", "get_session_context"]
