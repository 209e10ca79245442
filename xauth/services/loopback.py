"""
Short-lived HTTP listener that receives the OAuth redirect on 127.0.0.1.
"""

from __future__ import annotations

import asyncio
import html
import logging
import socket
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse

logger = logging.getLogger(__name__)

CALLBACK_PATHS = ("/auth/x/cb", "/callback")


@dataclass(slots=True)
class CallbackPage:
    status_code: int
    html: str


CallbackHandler = Callable[
    [Optional[str], Optional[str], Optional[str]], Awaitable[CallbackPage]
]


def render_page(title: str, body: str, *, status_code: int = 200) -> CallbackPage:
    """Small self-contained HTML page shown in the user's browser."""
    document = (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"<title>{html.escape(title)}</title></head>"
        "<body style=\"font-family: sans-serif; text-align: center; padding: 40px;\">"
        f"<h1>{html.escape(title)}</h1><p>{html.escape(body)}</p>"
        "</body></html>"
    )
    return CallbackPage(status_code=status_code, html=document)


def build_callback_app(handler: CallbackHandler) -> FastAPI:
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    async def callback(request: Request) -> HTMLResponse:
        params = request.query_params
        page = await handler(params.get("code"), params.get("state"), params.get("error"))
        return HTMLResponse(page.html, status_code=page.status_code)

    for path in CALLBACK_PATHS:
        app.add_api_route(path, callback, methods=["GET"])
    return app


class LoopbackListener:
    """Serves the callback app with uvicorn on an explicitly bound socket."""

    def __init__(self, handler: CallbackHandler, *, host: str = "127.0.0.1", port: int = 3000) -> None:
        self.host = host
        self.port = port
        self.app = build_callback_app(handler)
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None
        self._socket: Optional[socket.socket] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        # Binding here makes an occupied port raise OSError to the caller.
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        config = uvicorn.Config(
            self.app, log_level="warning", lifespan="off", access_log=False
        )
        self._socket = sock
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))
        while not self._server.started:
            if self._task.done():
                self._task.result()
                break
            await asyncio.sleep(0.01)
        logger.info("Loopback listener started on http://%s:%s", self.host, self.port)

    def request_stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True

    async def stop(self) -> None:
        if self._server is None:
            return
        self.request_stop()
        task = self._task
        if task is not None and task is not asyncio.current_task():
            await task
        if self._socket is not None:
            self._socket.close()
        self._server = None
        self._task = None
        self._socket = None
        logger.info("Loopback listener stopped")


__all__ = ["CALLBACK_PATHS", "CallbackPage", "LoopbackListener", "build_callback_app", "render_page"]
