try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

from datetime import datetime, timedelta, timezone

import pytest
from starlette.requests import Request

from xauth.core.errors import InvalidSessionError
from xauth.services.session_manager import LOCAL_USER_ID, SessionManager


@pytest.fixture
def sessions(store, cipher) -> SessionManager:
    return SessionManager(store, cipher)


def test_local_user_is_created_once(store, cipher) -> None:
    first = SessionManager(store, cipher)
    second = SessionManager(store, cipher)

    assert first.default_user_id == second.default_user_id
    local = store.get_user_by_x_user_id(LOCAL_USER_ID)
    assert local.id == first.default_user_id


def test_session_secret_must_match(sessions, store) -> None:
    user = store.create_user("x-1", "jack")
    issued = sessions.create_session(user.id)

    assert sessions.validate_session(issued.session_id, issued.session_secret) is not None
    assert sessions.validate_session(issued.session_id, "wrong-secret") is None
    assert sessions.get_user_from_session(issued.session_id, issued.session_secret).id == user.id
    assert sessions.get_user_from_session(issued.session_id, "wrong-secret") is None


def test_session_without_secret_trusts_transport(sessions, store) -> None:
    user = store.create_user("x-1", "jack")
    issued = sessions.create_session(user.id)

    assert sessions.validate_session(issued.session_id) is not None


def test_secret_is_stored_hashed(sessions, store) -> None:
    user = store.create_user("x-1", "jack")
    issued = sessions.create_session(user.id)

    stored = store.get_session(issued.session_id)
    assert issued.session_secret not in stored.session_secret_hash
    secret_hash, _, salt = stored.session_secret_hash.partition(":")
    assert secret_hash and salt


def test_expired_session_resolves_to_nobody(sessions, store, clock) -> None:
    user = store.create_user("x-1", "jack")
    issued = sessions.create_session(user.id, clock.now + timedelta(minutes=1))
    clock.advance(minutes=2)

    assert sessions.get_user_from_session(issued.session_id, issued.session_secret) is None
    with pytest.raises(InvalidSessionError):
        sessions.require_user(issued.session_id, issued.session_secret)


def test_missing_session_falls_back_to_local_user(sessions) -> None:
    user = sessions.require_user()

    assert user.id == sessions.default_user_id
    assert user.x_user_id == LOCAL_USER_ID


def test_local_session_lasts_a_year(sessions) -> None:
    issued = sessions.create_local_session()

    assert issued.expires_at - datetime.now(timezone.utc) > timedelta(days=364)
    user = sessions.require_user(issued.session_id, issued.session_secret)
    assert user.id == sessions.default_user_id


def test_delete_session(sessions, store) -> None:
    user = store.create_user("x-1", "jack")
    issued = sessions.create_session(user.id)

    sessions.delete_session(issued.session_id)

    assert sessions.validate_session(issued.session_id, issued.session_secret) is None


@pytest.mark.parametrize(
    "headers",
    [
        {"Authorization": "Bearer sid:secret"},
        {"cookie": "theme=dark; session=sid:secret"},
        {"X-Session-Id": "sid", "X-Session-Secret": "secret"},
    ],
)
def test_extract_session_context_from_dict_request(headers) -> None:
    context = SessionManager.extract_session_context({"headers": headers})

    assert context.session_id == "sid"
    assert context.session_secret == "secret"


def test_extract_session_context_from_meta_headers() -> None:
    request = {"meta": {"headers": {"authorization": "Bearer sid:secret"}}}

    context = SessionManager.extract_session_context(request)

    assert (context.session_id, context.session_secret) == ("sid", "secret")


def test_extract_session_context_from_starlette_request() -> None:
    request = Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/",
            "headers": [(b"authorization", b"Bearer sid:secret")],
        }
    )

    context = SessionManager.extract_session_context(request)

    assert (context.session_id, context.session_secret) == ("sid", "secret")


def test_extract_session_context_without_credentials() -> None:
    assert SessionManager.extract_session_context(None).is_empty
    assert SessionManager.extract_session_context({"headers": {}}).is_empty
