"""PKCE, anti-forgery state and pairing code generation."""

from __future__ import annotations

import base64
import hashlib
import secrets

# No O, 0, I, 1 or L so codes survive being read aloud or retyped.
PAIRING_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
PAIRING_CODE_LENGTH = 8


def generate_code_verifier() -> str:
    return secrets.token_urlsafe(32)


def generate_code_challenge(code_verifier: str) -> str:
    """S256 challenge: unpadded URL-safe base64 of SHA-256(verifier)."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_state() -> str:
    return secrets.token_urlsafe(16)


def generate_pairing_code(length: int = PAIRING_CODE_LENGTH) -> str:
    return "".join(secrets.choice(PAIRING_ALPHABET) for _ in range(length))


__all__ = [
    "PAIRING_ALPHABET",
    "PAIRING_CODE_LENGTH",
    "generate_code_challenge",
    "generate_code_verifier",
    "generate_pairing_code",
    "generate_state",
]
