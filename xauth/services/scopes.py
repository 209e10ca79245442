"""Scope requirements per tool and provider scope-name aliases."""

from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, List

DEFAULT_TOOL_SCOPES: FrozenSet[str] = frozenset({"users.read"})

TOOL_SCOPES: Dict[str, FrozenSet[str]] = {
    "bookmarks.list": frozenset({"bookmark.read"}),
    "bookmarks.add": frozenset({"bookmark.write"}),
    "bookmarks.remove": frozenset({"bookmark.write"}),
    "tweet.create": frozenset({"tweet.write"}),
    "users.me": frozenset({"users.read"}),
}

# X grants the singular names; older docs and some consoles use the plural.
SCOPE_ALIASES: Dict[str, str] = {
    "bookmarks.read": "bookmark.read",
    "bookmarks.write": "bookmark.write",
}


def canonical_scope(scope: str) -> str:
    return SCOPE_ALIASES.get(scope, scope)


def required_scopes_for_tool(tool_name: str) -> FrozenSet[str]:
    """Scopes a tool needs; unknown tools only need to read the identity."""
    return TOOL_SCOPES.get(tool_name, DEFAULT_TOOL_SCOPES)


def missing_scopes(granted: str | Iterable[str], required: Iterable[str]) -> List[str]:
    """Return the required scopes absent from ``granted``, honoring aliases.

    ``granted`` may be the space-delimited string returned by the token
    endpoint. Result order follows ``required`` (sorted when it is a set).
    """
    if isinstance(granted, str):
        granted = granted.split()
    have = {canonical_scope(scope) for scope in granted}
    if isinstance(required, (set, frozenset)):
        required = sorted(required)
    return [scope for scope in required if canonical_scope(scope) not in have]


__all__ = [
    "DEFAULT_TOOL_SCOPES",
    "SCOPE_ALIASES",
    "TOOL_SCOPES",
    "canonical_scope",
    "missing_scopes",
    "required_scopes_for_tool",
]
