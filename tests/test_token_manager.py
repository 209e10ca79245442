from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from xauth.clients.x_oauth import OAuthTokenExchangeError, TokenGrant
from xauth.core.config import HostedSettings
from xauth.core.errors import ReauthRequired, ScopeInsufficient
from xauth.models.records import UserToken
from xauth.schemas import TokenStatus
from xauth.services.token_manager import LOCAL_LOGIN_HINT, TokenManager


class DummyOAuthClient:
    def __init__(self, *, grant: TokenGrant | None = None, error: Exception | None = None) -> None:
        self.grant = grant or TokenGrant(
            access_token="refreshed-access", expires_in=7200, refresh_token="rotated-refresh"
        )
        self.error = error
        self.calls: list[str] = []

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        self.calls.append(refresh_token)
        if self.error is not None:
            raise self.error
        return self.grant


class RotatingOAuthClient:
    """Accepts each refresh token once and hands out a new one, as X does."""

    def __init__(self) -> None:
        self.current = "initial-refresh"
        self.calls: list[str] = []

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        self.calls.append(refresh_token)
        await asyncio.sleep(0)
        if refresh_token != self.current:
            raise OAuthTokenExchangeError("invalid_grant")
        number = len(self.calls)
        self.current = f"refresh-{number}"
        return TokenGrant(
            access_token=f"access-{number}", expires_in=7200, refresh_token=self.current
        )


def _seed(store, cipher, *, expires_in: timedelta, scopes: str = "users.read tweet.read offline.access"):
    user = store.create_user("x-1", "jack", "Jack")
    store.save_user_tokens(
        UserToken(
            user_id=user.id,
            x_user_id="x-1",
            granted_scopes=scopes,
            access_token=cipher.encrypt("initial-access"),
            refresh_token=cipher.encrypt("initial-refresh"),
            expires_at=datetime.now(timezone.utc) + expires_in,
        )
    )
    return user


def _manager(store, cipher, oauth_client, hosted: HostedSettings | None = None) -> TokenManager:
    return TokenManager(
        store=store,
        cipher=cipher,
        oauth_client=oauth_client,
        hosted_settings=hosted or HostedSettings(X_HOSTED_MODE=False),
    )


@pytest.mark.asyncio
async def test_fresh_token_is_returned_without_refresh(store, cipher) -> None:
    user = _seed(store, cipher, expires_in=timedelta(hours=1))
    oauth_client = DummyOAuthClient()

    token = await _manager(store, cipher, oauth_client).get_valid_access_token(user)

    assert token == "initial-access"
    assert oauth_client.calls == []


@pytest.mark.asyncio
async def test_token_inside_refresh_window_is_refreshed(store, cipher) -> None:
    user = _seed(store, cipher, expires_in=timedelta(seconds=30))
    oauth_client = DummyOAuthClient()

    token = await _manager(store, cipher, oauth_client).get_valid_access_token(user)

    assert token == "refreshed-access"
    assert oauth_client.calls == ["initial-refresh"]
    stored = store.get_user_tokens(user.id)
    assert cipher.decrypt(stored.access_token) == "refreshed-access"
    assert cipher.decrypt(stored.refresh_token) == "rotated-refresh"
    assert stored.expires_at > datetime.now(timezone.utc) + timedelta(hours=1)


@pytest.mark.asyncio
async def test_refresh_keeps_old_refresh_token_and_scope_when_absent(store, cipher) -> None:
    user = _seed(store, cipher, expires_in=timedelta(seconds=-5))
    oauth_client = DummyOAuthClient(grant=TokenGrant(access_token="new", expires_in=60))

    await _manager(store, cipher, oauth_client).get_valid_access_token(user)

    stored = store.get_user_tokens(user.id)
    assert cipher.decrypt(stored.refresh_token) == "initial-refresh"
    assert stored.granted_scopes == "users.read tweet.read offline.access"


@pytest.mark.asyncio
async def test_missing_tokens_require_login(store, cipher) -> None:
    user = store.create_user("x-1", "jack")

    with pytest.raises(ReauthRequired) as exc_info:
        await _manager(store, cipher, DummyOAuthClient()).get_valid_access_token(user)

    assert exc_info.value.login_url == LOCAL_LOGIN_HINT


@pytest.mark.asyncio
async def test_hosted_mode_points_at_login_url(store, cipher) -> None:
    user = store.create_user("x-1", "jack")
    hosted = HostedSettings(X_HOSTED_MODE=True, X_BASE_URL="https://auth.example.com/")

    with pytest.raises(ReauthRequired) as exc_info:
        await _manager(store, cipher, DummyOAuthClient(), hosted).get_valid_access_token(user)

    assert exc_info.value.login_url == "https://auth.example.com/api/auth/start"


@pytest.mark.asyncio
async def test_tool_scope_check_happens_before_refresh(store, cipher) -> None:
    user = _seed(store, cipher, expires_in=timedelta(seconds=10), scopes="users.read tweet.read")
    oauth_client = DummyOAuthClient()

    with pytest.raises(ScopeInsufficient) as exc_info:
        await _manager(store, cipher, oauth_client).validate_tool_access(user, "bookmarks.add")

    assert exc_info.value.missing_scopes == ["bookmark.write"]
    assert exc_info.value.to_dict()["code"] == "auth_scope_insufficient"
    assert oauth_client.calls == []


@pytest.mark.asyncio
async def test_refresh_rejection_deletes_tokens(store, cipher) -> None:
    user = _seed(store, cipher, expires_in=timedelta(seconds=-1))
    oauth_client = DummyOAuthClient(error=OAuthTokenExchangeError("invalid_grant", status_code=400))
    manager = _manager(store, cipher, oauth_client)

    with pytest.raises(ReauthRequired):
        await manager.get_valid_access_token(user)

    assert store.get_user_tokens(user.id) is None
    with pytest.raises(ReauthRequired):
        await manager.get_valid_access_token(user)
    assert len(oauth_client.calls) == 1


@pytest.mark.asyncio
async def test_network_error_keeps_tokens(store, cipher) -> None:
    user = _seed(store, cipher, expires_in=timedelta(seconds=-1))
    request = httpx.Request("POST", "https://api.x.com/2/oauth2/token")
    oauth_client = DummyOAuthClient(error=httpx.ConnectError("down", request=request))

    with pytest.raises(ReauthRequired):
        await _manager(store, cipher, oauth_client).get_valid_access_token(user)

    assert oauth_client.calls == ["initial-refresh"]
    assert store.get_user_tokens(user.id) is not None


@pytest.mark.asyncio
async def test_corrupted_tokens_require_login(store, cipher) -> None:
    user = store.create_user("x-1", "jack")
    store.save_user_tokens(
        UserToken(
            user_id=user.id,
            x_user_id="x-1",
            granted_scopes="users.read",
            access_token="garbage",
            refresh_token="garbage",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )
    )
    manager = _manager(store, cipher, DummyOAuthClient())

    with pytest.raises(ReauthRequired):
        await manager.get_valid_access_token(user)
    assert manager.validate_user_tokens(user).status is TokenStatus.CORRUPTED
    assert manager.get_user_token_info(user).has_tokens is False


def test_validate_user_tokens_statuses(store, cipher) -> None:
    user = _seed(store, cipher, expires_in=timedelta(seconds=30), scopes="users.read")
    manager = _manager(store, cipher, DummyOAuthClient())

    assert manager.validate_user_tokens(user).status is TokenStatus.EXPIRED
    both = manager.validate_user_tokens(user, "tweet.create")
    assert both.status is TokenStatus.EXPIRED_AND_SCOPE_INSUFFICIENT
    assert both.missing_scopes == ["tweet.write"]

    manager.clear_user_tokens(user.id)
    assert manager.validate_user_tokens(user).status is TokenStatus.MISSING


def test_token_info_masks_access_token(store, cipher) -> None:
    user = _seed(store, cipher, expires_in=timedelta(hours=1))

    info = _manager(store, cipher, DummyOAuthClient()).get_user_token_info(user)

    assert info.has_tokens
    assert info.masked_token == "init...cess"
    assert info.scopes == ["users.read", "tweet.read", "offline.access"]
    assert _manager(store, cipher, DummyOAuthClient()).validate_user_tokens(user, "users.me").valid


@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_rotation(store, cipher) -> None:
    user = _seed(store, cipher, expires_in=timedelta(seconds=30))
    oauth_client = RotatingOAuthClient()
    manager = _manager(store, cipher, oauth_client)

    results = await asyncio.gather(
        manager.get_valid_access_token(user),
        manager.get_valid_access_token(user),
    )

    assert results == ["access-1", "access-1"]
    assert oauth_client.calls == ["initial-refresh"]
    stored = store.get_user_tokens(user.id)
    assert cipher.decrypt(stored.refresh_token) == "refresh-1"


@pytest.mark.asyncio
async def test_rejected_refresh_keeps_row_rotated_elsewhere(store, cipher) -> None:
    user = _seed(store, cipher, expires_in=timedelta(seconds=30))
    rotated = UserToken(
        user_id=user.id,
        x_user_id="x-1",
        granted_scopes="users.read tweet.read offline.access",
        access_token=cipher.encrypt("other-access"),
        refresh_token=cipher.encrypt("other-refresh"),
        expires_at=datetime.now(timezone.utc) + timedelta(hours=2),
    )

    class RacingOAuthClient:
        async def refresh_token(self, refresh_token: str) -> TokenGrant:
            store.save_user_tokens(rotated)
            raise OAuthTokenExchangeError("invalid_grant")

    with pytest.raises(ReauthRequired):
        await _manager(store, cipher, RacingOAuthClient()).get_valid_access_token(user)

    stored = store.get_user_tokens(user.id)
    assert cipher.decrypt(stored.access_token) == "other-access"
