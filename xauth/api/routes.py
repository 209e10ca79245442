"""
FastAPI routes for the hosted credential broker.
"""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Annotated, Any, List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import HTMLResponse, RedirectResponse

from xauth.core.config import AppSettings
from xauth.core.errors import OAuthFlowError
from xauth.dependencies import (
    get_app_settings,
    get_current_user,
    get_oauth_flow_controller,
    get_session_context,
    get_session_manager,
    get_token_manager,
)
from xauth.models.records import User
from xauth.schemas import (
    AuthStartResponse,
    AuthStatusResponse,
    ClaimSessionRequest,
    IssuedSession,
    SessionContext,
    TokenValidation,
)
from xauth.services import OAuthFlowController, SessionManager, TokenManager
from xauth.services.loopback import CallbackPage, render_page

router = APIRouter()
logger = logging.getLogger(__name__)


def _split_scopes(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [scope for scope in raw.replace(",", " ").split() if scope]


def _html(page: CallbackPage) -> HTMLResponse:
    return HTMLResponse(page.html, status_code=page.status_code)


@router.get("/health", status_code=HTTPStatus.OK)
async def healthcheck() -> dict:
    """Simple health endpoint for monitoring."""
    return {"status": "ok"}


@router.api_route(
    "/auth/start", methods=["GET", "POST"], response_model=AuthStartResponse
)
async def start_auth(
    settings: Annotated[AppSettings, Depends(get_app_settings)],
    controller: Annotated[OAuthFlowController, Depends(get_oauth_flow_controller)],
    mode: str = Query(default="hosted", pattern="^(hosted|loopback)$"),
    additional_scopes: str | None = Query(
        default=None, description="Comma separated scopes to request on top of the defaults."
    ),
) -> AuthStartResponse:
    """Start a login; hosted mode returns a pairing code and login link."""
    if mode == "loopback":
        if settings.hosted.enabled:
            raise HTTPException(
                status_code=HTTPStatus.BAD_REQUEST,
                detail="Loopback login is unavailable in hosted mode.",
            )
        try:
            return await controller.start_loopback_auth(_split_scopes(additional_scopes))
        except OSError as exc:
            logger.error("Could not bind loopback listener: %s", exc)
            raise HTTPException(
                status_code=HTTPStatus.SERVICE_UNAVAILABLE,
                detail="Loopback callback port is unavailable.",
            ) from exc

    response = controller.start_hosted_auth()
    if additional_scopes:
        scopes = ",".join(_split_scopes(additional_scopes))
        response.login_url = f"{response.login_url}&additional_scopes={quote(scopes)}"
    return response


@router.get("/auth/login")
async def hosted_login(
    controller: Annotated[OAuthFlowController, Depends(get_oauth_flow_controller)],
    pairing_code: str = Query(..., min_length=1),
    additional_scopes: str | None = Query(default=None),
):
    """Send the browser to the X consent screen for a pairing code."""
    try:
        authorize_url = controller.build_hosted_authorization_url(
            pairing_code.upper(), _split_scopes(additional_scopes)
        )
    except OAuthFlowError as exc:
        return _html(render_page("Login Link Invalid", exc.message, status_code=400))
    return RedirectResponse(url=authorize_url, status_code=HTTPStatus.FOUND)


@router.get("/auth/x/callback", response_class=HTMLResponse)
async def hosted_callback(
    controller: Annotated[OAuthFlowController, Depends(get_oauth_flow_controller)],
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
) -> HTMLResponse:
    try:
        result = await controller.handle_hosted_callback(code, state, error)
    except OAuthFlowError as exc:
        return _html(render_page("Authentication Failed", exc.message, status_code=400))
    return _html(
        render_page(
            "Authentication Successful",
            f"Logged in as @{result.x_username}. Return to your chat to finish "
            f"pairing with code {result.pairing_code}.",
        )
    )


@router.get("/auth/status", response_model=AuthStatusResponse)
async def pairing_status(
    controller: Annotated[OAuthFlowController, Depends(get_oauth_flow_controller)],
    pairing_code: str = Query(..., min_length=1),
) -> AuthStatusResponse:
    return controller.check_pairing_status(pairing_code.upper())


@router.post(
    "/auth/session", response_model=IssuedSession, status_code=HTTPStatus.CREATED
)
async def claim_session(
    payload: ClaimSessionRequest,
    controller: Annotated[OAuthFlowController, Depends(get_oauth_flow_controller)],
) -> IssuedSession:
    """Exchange a verified pairing code for session credentials."""
    return controller.claim_pairing_session(payload.pairing_code.upper())


@router.delete("/auth/session")
async def logout(
    user: Annotated[User, Depends(get_current_user)],
    context: Annotated[SessionContext, Depends(get_session_context)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
) -> dict:
    sessions.delete_session(context.session_id)
    return {"status": "logged_out", "user_id": user.id}


@router.get("/auth/me")
async def whoami(
    user: Annotated[User, Depends(get_current_user)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    tokens: Annotated[TokenManager, Depends(get_token_manager)],
) -> dict[str, Any]:
    return {
        "user": user.model_dump(mode="json"),
        "tokens": tokens.get_user_token_info(user).model_dump(mode="json"),
        "stats": sessions.get_user_stats(user.id).model_dump(mode="json"),
    }


@router.get("/auth/tokens/validate", response_model=TokenValidation)
async def validate_tokens(
    user: Annotated[User, Depends(get_current_user)],
    tokens: Annotated[TokenManager, Depends(get_token_manager)],
    tool: str | None = Query(default=None, description="Tool whose scopes to check."),
) -> TokenValidation:
    return tokens.validate_user_tokens(user, tool)


@router.delete("/auth/tokens")
async def revoke_tokens(
    user: Annotated[User, Depends(get_current_user)],
    tokens: Annotated[TokenManager, Depends(get_token_manager)],
) -> dict:
    tokens.clear_user_tokens(user.id)
    return {"status": "cleared", "user_id": user.id}


__all__ = ["router"]
