"""Test helper that normalizes sys.path and environment defaults."""

from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

_STATE_DIR = Path(tempfile.mkdtemp(prefix="xauth-tests-"))

_DEFAULT_ENV_VARS: dict[str, str] = {
    "X_CLIENT_ID": "test-client-id",
    "X_CLIENT_SECRET": "test-client-secret",
    "X_REDIRECT_URI": "http://127.0.0.1:3000/auth/x/cb",
    "X_BASE_URL": "https://auth.example.com",
    # base64("0123456789abcdef0123456789abcdef")
    "XAUTH_ENCRYPTION_KEY": "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY=",
    "XAUTH_USE_KEYRING": "false",
    "XAUTH_DB_PATH": str(_STATE_DIR / "tokens.db"),
    "XAUTH_KEY_PATH": str(_STATE_DIR / ".encryption_key"),
    "XAUTH_CLEANUP_INTERVAL_SECONDS": "0",
}

for key, value in _DEFAULT_ENV_VARS.items():
    os.environ.setdefault(key, value)
