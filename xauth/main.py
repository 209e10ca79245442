"""
FastAPI application entrypoint for the hosted credential broker.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from http import HTTPStatus
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from xauth.api.routes import router as api_router
from xauth.core.config import get_settings
from xauth.core.errors import AuthError, ScopeInsufficient
from xauth.core.logging import configure_logging
from xauth.dependencies import get_oauth_flow_controller

logger = logging.getLogger(__name__)


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    status = HTTPStatus.FORBIDDEN if isinstance(exc, ScopeInsufficient) else HTTPStatus.UNAUTHORIZED
    return JSONResponse(status_code=status, content=exc.to_dict())


async def _periodic_cleanup(interval: float) -> None:
    controller = get_oauth_flow_controller()
    while True:
        await asyncio.sleep(interval)
        try:
            controller.cleanup_expired()
        except Exception:  # pragma: no cover - keep the loop alive
            logger.exception("Periodic cleanup failed")


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    controller = get_oauth_flow_controller()
    sessions, pairings = controller.cleanup_expired()
    logger.info(
        "Startup cleanup removed %d session(s) and %d pairing(s)", sessions, pairings
    )

    cleanup_task = None
    if settings.storage.cleanup_interval_seconds > 0:
        cleanup_task = asyncio.create_task(
            _periodic_cleanup(settings.storage.cleanup_interval_seconds)
        )
    try:
        yield
    finally:
        if cleanup_task is not None:
            cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cleanup_task
        await controller.shutdown()


def create_app() -> FastAPI:
    """Factory for the FastAPI application."""
    settings = get_settings()
    configure_logging(settings.log_level)
    if not settings.x.is_configured:
        logger.warning("X_CLIENT_ID/X_CLIENT_SECRET are not set; logins will fail")

    app = FastAPI(
        title="X Credential Broker",
        version="0.1.0",
        description="Multi-user OAuth 2.0 + PKCE login and token management for X.",
        lifespan=lifespan,
    )
    app.add_exception_handler(AuthError, auth_error_handler)
    app.include_router(api_router, prefix="/api")
    return app


app = create_app()

__all__ = ["app", "create_app"]
