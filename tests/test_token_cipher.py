try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import base64
import os
import stat

import pytest

from xauth.services import token_cipher
from xauth.services.token_cipher import (
    DecryptionError,
    TokenCipherService,
    resolve_encryption_key,
)


def test_token_cipher_roundtrip(cipher: TokenCipherService) -> None:
    plaintext = "sensitive-token"

    encrypted = cipher.encrypt(plaintext)
    assert encrypted != plaintext

    decrypted = cipher.decrypt(encrypted)
    assert decrypted == plaintext


def test_encrypting_twice_gives_different_ciphertexts(cipher: TokenCipherService) -> None:
    first = cipher.encrypt("same-token")
    second = cipher.encrypt("same-token")

    assert first != second
    assert cipher.decrypt(first) == cipher.decrypt(second) == "same-token"


def test_token_cipher_rejects_bad_ciphertext(cipher: TokenCipherService) -> None:
    with pytest.raises(DecryptionError):
        cipher.decrypt("not-valid")


def test_ciphertext_from_another_key_is_rejected(cipher: TokenCipherService) -> None:
    other = TokenCipherService(key=b"z" * 32)

    with pytest.raises(DecryptionError):
        cipher.decrypt(other.encrypt("secret"))


def test_rejects_short_key() -> None:
    with pytest.raises(ValueError):
        TokenCipherService(key=b"short")


def test_password_hash_verifies_only_the_original(cipher: TokenCipherService) -> None:
    password_hash, salt = cipher.hash_password("s3cret")

    assert len(bytes.fromhex(salt)) == 16
    assert len(bytes.fromhex(password_hash)) == 64
    assert cipher.verify_password("s3cret", password_hash, salt)
    assert not cipher.verify_password("wrong", password_hash, salt)
    assert not cipher.verify_password("s3cret", password_hash, "not-hex")


def test_same_salt_gives_same_hash(cipher: TokenCipherService) -> None:
    first, salt = cipher.hash_password("value")
    second, _ = cipher.hash_password("value", salt)

    assert first == second


def test_mask_token() -> None:
    assert TokenCipherService.mask_token("short") == "***"
    assert TokenCipherService.mask_token("abcdefghijkl") == "abcd...ijkl"


def test_generate_secure_token_is_unique() -> None:
    tokens = {TokenCipherService.generate_secure_token() for _ in range(20)}
    assert len(tokens) == 20


def test_resolve_key_prefers_env_when_keyring_disabled(tmp_path) -> None:
    raw = b"e" * 32
    key = resolve_encryption_key(
        env_key=base64.b64encode(raw).decode(),
        key_path=tmp_path / "key",
        use_keyring=False,
    )

    assert key == raw
    assert not (tmp_path / "key").exists()


def test_resolve_key_rejects_wrong_length_env_key(tmp_path) -> None:
    with pytest.raises(ValueError):
        resolve_encryption_key(
            env_key=base64.b64encode(b"too-short").decode(),
            key_path=tmp_path / "key",
            use_keyring=False,
        )


def test_resolve_key_generates_owner_only_key_file(tmp_path) -> None:
    key_path = tmp_path / "nested" / ".encryption_key"

    key = resolve_encryption_key(env_key=None, key_path=key_path, use_keyring=False)

    assert len(key) == 32
    assert stat.S_IMODE(os.stat(key_path).st_mode) == 0o600
    again = resolve_encryption_key(env_key=None, key_path=key_path, use_keyring=False)
    assert again == key


def test_resolve_key_reads_keyring_first(tmp_path, monkeypatch) -> None:
    raw = b"v" * 32
    calls = []

    def fake_get_password(service, account):
        calls.append((service, account))
        return base64.b64encode(raw).decode()

    monkeypatch.setattr(token_cipher.keyring, "get_password", fake_get_password)

    key = resolve_encryption_key(
        env_key=base64.b64encode(b"e" * 32).decode(),
        key_path=tmp_path / "key",
        keyring_service="xauth-test",
    )

    assert key == raw
    assert calls == [("xauth-test", token_cipher.KEYRING_ACCOUNT)]


def test_resolve_key_falls_back_to_file_when_keyring_fails(tmp_path, monkeypatch) -> None:
    def broken(*_args):
        raise token_cipher.KeyringError("no backend")

    monkeypatch.setattr(token_cipher.keyring, "get_password", broken)
    monkeypatch.setattr(token_cipher.keyring, "set_password", broken)

    key_path = tmp_path / ".encryption_key"
    key = resolve_encryption_key(env_key=None, key_path=key_path)

    assert key_path.exists()
    assert base64.b64decode(key_path.read_text()) == key
