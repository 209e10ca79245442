"""
Application configuration models and helpers.

Centralizes settings management so the hosted FastAPI app, the loopback CLI
and the credential services share a consistent configuration surface.
"""

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Optional
from urllib.parse import urlsplit

import os

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _load_env_file(path: str = ".env") -> None:
    """Best-effort load key=value pairs from a .env file without extra deps."""
    env_path = Path(path)
    if not env_path.exists():
        return
    for raw_line in env_path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if not key or key in os.environ:
            continue
        cleaned = value.strip().strip('"').strip("'")
        os.environ[key] = cleaned


_load_env_file()

_STATE_DIR = Path.home() / ".xauth"

DEFAULT_SCOPES: tuple[str, ...] = (
    "users.read",
    "tweet.read",
    "tweet.write",
    "bookmark.read",
    "bookmark.write",
    "offline.access",
)


class XSettings(BaseSettings):
    """Configuration required for talking to the X authorization server."""

    model_config = SettingsConfigDict(extra="ignore")

    client_id: str = Field("", validation_alias="X_CLIENT_ID")
    client_secret: str = Field("", validation_alias="X_CLIENT_SECRET")
    redirect_uri: AnyHttpUrl = Field(
        "http://127.0.0.1:3000/auth/x/cb",
        validation_alias="X_REDIRECT_URI",
    )
    scopes: Annotated[tuple[str, ...], NoDecode] = Field(
        DEFAULT_SCOPES,
        validation_alias="X_SCOPES",
        description="Scopes requested when building authorization URLs.",
    )

    @field_validator("scopes", mode="before")
    @classmethod
    def _split_scopes(
        cls, value: str | tuple[str, ...] | list[str]
    ) -> tuple[str, ...]:
        """Support providing scopes as a comma or space separated string."""
        if isinstance(value, tuple):
            return value
        if isinstance(value, list):
            return tuple(value)
        return tuple(
            scope.strip() for scope in value.replace(",", " ").split() if scope.strip()
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def redirect_port(self) -> int:
        """Port the loopback listener binds, taken from the redirect URI."""
        parsed = urlsplit(str(self.redirect_uri))
        if parsed.port:
            return parsed.port
        return 443 if parsed.scheme == "https" else 80


class HostedSettings(BaseSettings):
    """Settings for the multi-user hosted pairing mode."""

    model_config = SettingsConfigDict(extra="ignore")

    enabled: bool = Field(False, validation_alias="X_HOSTED_MODE")
    base_url: Optional[str] = Field(
        None,
        validation_alias="X_BASE_URL",
        description="Public base URL used when building login links.",
    )

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: Optional[str]) -> Optional[str]:
        return value.rstrip("/") if value else value


class SecuritySettings(BaseSettings):
    """Security-related configuration."""

    model_config = SettingsConfigDict(extra="ignore")

    encryption_key: Optional[str] = Field(
        None,
        validation_alias="XAUTH_ENCRYPTION_KEY",
        description="Base64 encoded 32-byte key used to encrypt stored tokens.",
    )
    key_path: Path = Field(
        _STATE_DIR / ".encryption_key",
        validation_alias="XAUTH_KEY_PATH",
        description="Fallback key file used when no vault or env key is available.",
    )
    keyring_service: str = Field("xauth", validation_alias="XAUTH_KEYRING_SERVICE")
    use_keyring: bool = Field(True, validation_alias="XAUTH_USE_KEYRING")


class StorageSettings(BaseSettings):
    """Persistent store configuration."""

    model_config = SettingsConfigDict(extra="ignore")

    db_path: Path = Field(_STATE_DIR / "tokens.db", validation_alias="XAUTH_DB_PATH")
    session_ttl_days: int = Field(30, validation_alias="XAUTH_SESSION_TTL_DAYS")
    pairing_ttl_minutes: int = Field(10, validation_alias="XAUTH_PAIRING_TTL_MINUTES")
    cleanup_interval_seconds: int = Field(
        3600,
        validation_alias="XAUTH_CLEANUP_INTERVAL_SECONDS",
        description="Periodic expiry cleanup for the hosted app; 0 disables it.",
    )


class AppSettings(BaseSettings):
    """Root settings object for the credential broker."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = Field("development", validation_alias="APP_ENV")
    log_level: str = Field("INFO", validation_alias="APP_LOG_LEVEL")
    x: XSettings = Field(default_factory=XSettings)
    hosted: HostedSettings = Field(default_factory=HostedSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


@lru_cache()
def get_settings() -> AppSettings:
    """Return a cached settings object."""
    return AppSettings()  # type: ignore[call-arg]


__all__ = [
    "AppSettings",
    "DEFAULT_SCOPES",
    "HostedSettings",
    "SecuritySettings",
    "StorageSettings",
    "XSettings",
    "get_settings",
]
