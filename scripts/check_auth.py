"""Report which users have stored X tokens and whether they are usable.

Example usages::

    xauth-check
    xauth-check --tool bookmarks.add
    xauth-check --user jack
"""

from __future__ import annotations

import argparse
import sys
from typing import Optional, TextIO

from xauth.core.config import get_settings
from xauth.core.logging import configure_logging
from xauth.dependencies import get_session_manager, get_token_manager
from xauth.schemas import TokenStatus
from xauth.services import LOCAL_USER_ID, SessionManager, TokenManager

EXIT_OK = 0
EXIT_INVALID_TOKENS = 3
EXIT_NO_USERS = 4
EXIT_RUNTIME_ERROR = 5


def report(
    sessions: SessionManager,
    tokens: TokenManager,
    *,
    tool: Optional[str] = None,
    username: Optional[str] = None,
    out: TextIO = sys.stdout,
) -> int:
    users = [
        user
        for user in sessions.list_users()
        if username is None or user.x_username.lower() == username.lower().lstrip("@")
    ]
    if not users:
        print("No matching users found. Run `xauth-login` first.", file=out)
        return EXIT_NO_USERS

    exit_code = EXIT_OK
    for user in users:
        validation = tokens.validate_user_tokens(user, tool)
        if validation.status is TokenStatus.MISSING and user.x_user_id == LOCAL_USER_ID:
            continue
        info = tokens.get_user_token_info(user)
        stats = sessions.get_user_stats(user.id)

        print(f"@{user.x_username} (id {user.id}, {user.display_name})", file=out)
        print(f"  status:   {validation.status.value}", file=out)
        if info.has_tokens:
            print(f"  scopes:   {' '.join(info.scopes)}", file=out)
            print(f"  expires:  {info.expires_at.isoformat()}", file=out)
            print(f"  token:    {info.masked_token}", file=out)
        if validation.missing_scopes:
            print(f"  missing:  {', '.join(validation.missing_scopes)}", file=out)
        if stats.last_activity:
            print(f"  activity: {stats.last_activity.isoformat()}", file=out)
        print(f"  sessions: {stats.session_count}", file=out)

        # EXPIRED still holds a usable refresh token.
        if validation.status not in (TokenStatus.VALID, TokenStatus.EXPIRED):
            exit_code = EXIT_INVALID_TOKENS
    return exit_code


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="List users with stored X tokens and their status."
    )
    parser.add_argument(
        "--tool",
        default=None,
        help="Also check the scopes required by this tool (e.g. bookmarks.add).",
    )
    parser.add_argument(
        "--user",
        default=None,
        help="Only report the user with this X username.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(get_settings().log_level)

    try:
        return report(
            get_session_manager(),
            get_token_manager(),
            tool=args.tool,
            username=args.user,
        )
    except Exception as exc:  # pylint: disable=broad-except
        print(f"Unexpected error while checking tokens: {exc}", file=sys.stderr)
        return EXIT_RUNTIME_ERROR


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())
