"""Log in to X from a terminal using the loopback OAuth flow.

Starts a short-lived listener on the redirect URI's port, prints (and by
default opens) the consent URL, then waits for X to redirect back.

Example usages::

    xauth-login
    xauth-login --no-browser --timeout 120
    xauth-login --scope bookmark.write --issue-session
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import webbrowser
from typing import Sequence, TextIO

from xauth.core.config import get_settings
from xauth.core.errors import OAuthFlowError
from xauth.core.logging import configure_logging
from xauth.dependencies import (
    get_oauth_flow_controller,
    get_session_manager,
    get_token_manager,
)
from xauth.services import OAuthFlowController, SessionManager, TokenManager

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_AUTH_FAILED = 3
EXIT_TIMEOUT = 4
EXIT_RUNTIME_ERROR = 5


async def run_login(
    controller: OAuthFlowController,
    sessions: SessionManager,
    tokens: TokenManager,
    *,
    timeout: float,
    scopes: Sequence[str] = (),
    open_browser: bool = True,
    issue_session: bool = False,
    out: TextIO = sys.stdout,
) -> int:
    """Drive one loopback login and report the outcome on ``out``."""
    try:
        try:
            started = await controller.start_loopback_auth(scopes)
        except OSError as exc:
            print(f"Could not start the callback listener: {exc}", file=sys.stderr)
            return EXIT_RUNTIME_ERROR

        print("Open this URL to authorize access to your X account:", file=out)
        print(started.authorize_url, file=out)
        if open_browser:
            webbrowser.open(started.authorize_url)

        try:
            user = await controller.wait_for_loopback(timeout)
        except asyncio.TimeoutError:
            print(f"Timed out after {timeout:.0f}s waiting for authorization.", file=sys.stderr)
            return EXIT_TIMEOUT
        except OAuthFlowError as exc:
            print(f"Authentication failed ({exc.reason.value}): {exc.message}", file=sys.stderr)
            return EXIT_AUTH_FAILED

        info = tokens.get_user_token_info(user)
        print(f"Logged in as @{user.x_username} ({user.display_name})", file=out)
        print(f"Granted scopes: {' '.join(info.scopes) or '(none)'}", file=out)
        if issue_session:
            issued = sessions.create_local_session(user.id)
            print(f"Session token: {issued.bearer_token}", file=out)
            print(f"Session expires: {issued.expires_at.isoformat()}", file=out)
        return EXIT_OK
    finally:
        await controller.shutdown()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Authorize this machine against your X account."
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=300.0,
        help="Seconds to wait for the browser redirect (default: 300).",
    )
    parser.add_argument(
        "--scope",
        action="append",
        default=[],
        dest="scopes",
        help="Extra scope to request on top of X_SCOPES. Repeatable.",
    )
    parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Only print the authorization URL.",
    )
    parser.add_argument(
        "--issue-session",
        action="store_true",
        help="Print a long-lived session token for local tools.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level)
    if not settings.x.is_configured:
        print("X_CLIENT_ID and X_CLIENT_SECRET must be set.", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        return asyncio.run(
            run_login(
                get_oauth_flow_controller(),
                get_session_manager(),
                get_token_manager(),
                timeout=args.timeout,
                scopes=args.scopes,
                open_browser=not args.no_browser,
                issue_session=args.issue_session,
            )
        )
    except Exception as exc:  # pylint: disable=broad-except
        print(f"Unexpected error during login: {exc}", file=sys.stderr)
        return EXIT_RUNTIME_ERROR


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())
