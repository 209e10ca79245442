"""Symmetric encryption and hashing utilities for protecting stored secrets."""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
import os
import secrets
from pathlib import Path
from typing import Optional, Tuple

import keyring
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from keyring.errors import KeyringError

logger = logging.getLogger(__name__)

KEY_BYTES = 32
KEYRING_ACCOUNT = "encryption-key"
PBKDF2_ITERATIONS = 100_000
PBKDF2_LENGTH = 64
SALT_BYTES = 16


class EncryptionError(Exception):
    """Raised when a plaintext value cannot be encrypted."""


class DecryptionError(Exception):
    """Raised when a stored ciphertext is malformed or fails authentication."""


def _decode_key(encoded: str, source: str) -> bytes:
    try:
        key = base64.b64decode(encoded.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Encryption key from {source} is not valid base64.") from exc
    if len(key) != KEY_BYTES:
        raise ValueError(
            f"Encryption key from {source} must decode to {KEY_BYTES} bytes, got {len(key)}."
        )
    return key


def _read_keyring_key(service: str) -> Optional[str]:
    try:
        return keyring.get_password(service, KEYRING_ACCOUNT)
    except KeyringError as exc:
        logger.info("OS keyring unavailable (%s); falling back to env/file key", exc)
        return None


def _write_keyring_key(service: str, encoded: str) -> bool:
    try:
        keyring.set_password(service, KEYRING_ACCOUNT, encoded)
    except KeyringError as exc:
        logger.info("Unable to store encryption key in OS keyring: %s", exc)
        return False
    return True


def _read_key_file(key_path: Path) -> Optional[str]:
    if not key_path.exists():
        return None
    try:
        return key_path.read_text(encoding="utf-8").strip() or None
    except OSError as exc:
        logger.warning("Failed to read encryption key file %s: %s", key_path, exc)
        return None


def _write_key_file(key_path: Path, encoded: str) -> None:
    key_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(encoded)
    os.chmod(key_path, 0o600)


def resolve_encryption_key(
    *,
    env_key: Optional[str],
    key_path: Path,
    keyring_service: str = "xauth",
    use_keyring: bool = True,
) -> bytes:
    """
    Locate or create the 32-byte key used to encrypt stored tokens.

    Sources are tried in order: the OS keyring, an explicit environment key,
    then a key file. When none yields a key, a new one is generated and
    persisted to the keyring, or to ``key_path`` with owner-only permissions
    when the keyring cannot store it.
    """
    if use_keyring:
        stored = _read_keyring_key(keyring_service)
        if stored:
            return _decode_key(stored, "OS keyring")

    if env_key:
        return _decode_key(env_key, "XAUTH_ENCRYPTION_KEY")

    stored = _read_key_file(key_path)
    if stored:
        return _decode_key(stored, str(key_path))

    key = secrets.token_bytes(KEY_BYTES)
    encoded = base64.b64encode(key).decode("ascii")
    if use_keyring and _write_keyring_key(keyring_service, encoded):
        logger.info("Encryption key stored in OS keyring (service=%s)", keyring_service)
    else:
        try:
            _write_key_file(key_path, encoded)
        except OSError as exc:
            raise EncryptionError("Unable to store encryption key securely.") from exc
        logger.info("Encryption key stored at %s", key_path)
    return key


class TokenCipherService:
    """Encrypt and decrypt sensitive strings and hash session secrets."""

    def __init__(self, *, key: bytes) -> None:
        if len(key) != KEY_BYTES:
            raise ValueError(f"Token encryption key must be {KEY_BYTES} bytes.")
        self._fernet = Fernet(base64.urlsafe_b64encode(key))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a plaintext string and return the ciphertext.

        Fernet draws a fresh IV for every call and embeds it in the token, so
        encrypting the same value twice yields different ciphertexts.
        """
        try:
            token = self._fernet.encrypt(plaintext.encode("utf-8"))
        except (TypeError, AttributeError, UnsupportedAlgorithm) as exc:
            raise EncryptionError("Failed to encrypt value.") from exc
        return token.decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a ciphertext string and return the plaintext."""
        try:
            plaintext = self._fernet.decrypt(ciphertext.encode("utf-8"))
        except (InvalidToken, TypeError, AttributeError) as exc:
            raise DecryptionError(
                "Failed to decrypt token; invalid ciphertext provided."
            ) from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted token is not valid UTF-8.") from exc

    def hash_password(
        self, password: str, salt: Optional[str] = None
    ) -> Tuple[str, str]:
        """Derive a PBKDF2-SHA512 hash, returning ``(hash_hex, salt_hex)``."""
        salt_bytes = bytes.fromhex(salt) if salt else secrets.token_bytes(SALT_BYTES)
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=PBKDF2_LENGTH,
            salt=salt_bytes,
            iterations=PBKDF2_ITERATIONS,
        )
        digest = kdf.derive(password.encode("utf-8"))
        return digest.hex(), salt_bytes.hex()

    def verify_password(self, password: str, password_hash: str, salt: str) -> bool:
        """Recompute the hash for ``password`` and compare in constant time."""
        try:
            computed, _ = self.hash_password(password, salt)
        except ValueError:
            return False
        return hmac.compare_digest(computed, password_hash)

    @staticmethod
    def generate_secure_token(length: int = 32) -> str:
        """Return ``length`` random bytes encoded as URL-safe base64."""
        return secrets.token_urlsafe(length)

    @staticmethod
    def mask_token(token: str) -> str:
        """Keep only a short prefix and suffix of a secret for display."""
        if len(token) <= 8:
            return "***"
        return f"{token[:4]}...{token[-4:]}"


__all__ = [
    "DecryptionError",
    "EncryptionError",
    "TokenCipherService",
    "resolve_encryption_key",
]
