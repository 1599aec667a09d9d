import time

import pytest

from app.fieldops.auth_client import (
    AuthApiError,
    AuthClient,
    AuthRetryableError,
    AuthSession,
    AuthSettings,
    MemoryStorage,
    build_opener,
)

from tests.conftest import AUTH_URL, FakeAuthServer


@pytest.fixture()
def server():
    return FakeAuthServer()


def _client(server, *, strip=False, storage=None, **kwargs):
    settings = AuthSettings(base_url=AUTH_URL, api_key="anon-key", handlers=(server,))
    return AuthClient(
        settings,
        storage=storage or MemoryStorage(),
        opener=build_opener(strip_authorization=strip, handlers=settings.handlers),
        **kwargs,
    )


def test_requests_carry_api_key(server):
    server.add_user("a@x.com", "secret1")
    _client(server).sign_in_with_password("a@x.com", "secret1")
    (call,) = server.requests_to("/token")
    assert call["headers"]["apikey"] == "anon-key"
    assert call["params"] == {"grant_type": "password"}


def test_strip_authorization_handler_drops_bearer(server):
    _client(server, strip=True).request_json("POST", "/logout", access_token="operator-token")
    _client(server).request_json("POST", "/logout", access_token="operator-token")

    stripped, plain = server.requests_to("/logout")
    assert "authorization" not in stripped["headers"]
    assert plain["headers"]["authorization"] == "Bearer operator-token"


def test_sign_in_persists_to_storage(server):
    server.add_user("a@x.com", "secret1")
    storage = MemoryStorage()
    sess = _client(server, storage=storage).sign_in_with_password("a@x.com", "secret1")
    assert storage.keys() == [AuthClient.STORAGE_KEY]
    assert AuthSession.from_json(storage.get_item(AuthClient.STORAGE_KEY)) == sess


def test_non_persistent_client_leaves_storage_empty(server):
    storage = MemoryStorage()
    client = _client(server, storage=storage, persist_session=False, auto_refresh_token=False)
    payload = client.sign_up("new@x.com", "secret1")
    assert payload["user"]["email"] == "new@x.com"
    assert storage.keys() == []
    # Kept only on the client instance itself.
    assert client.get_session().user_id == payload["user"]["id"]


def test_bad_password_is_api_error(server):
    server.add_user("a@x.com", "secret1")
    with pytest.raises(AuthApiError) as exc:
        _client(server).sign_in_with_password("a@x.com", "wrong")
    assert exc.value.status == 400
    assert exc.value.error_code == "invalid_grant"
    assert exc.value.message == "Invalid login credentials"


def test_server_error_is_retryable(server):
    server.signup_override = (503, {"msg": "upstream down"})
    with pytest.raises(AuthRetryableError) as exc:
        _client(server).sign_up("a@x.com", "secret1")
    assert exc.value.status == 503


def test_missing_base_url_is_retryable():
    client = AuthClient(AuthSettings(base_url="", api_key="k"), storage=MemoryStorage())
    with pytest.raises(AuthRetryableError):
        client.request_json("POST", "/recover", body={"email": "a@x.com"})


def test_expired_session_is_refreshed(server):
    uid = server.add_user("a@x.com", "secret1")
    storage = MemoryStorage()
    expired = AuthSession(
        access_token="old",
        refresh_token=f"refresh-{uid}",
        expires_at=int(time.time()) - 60,
        user={"id": uid},
    )
    storage.set_item(AuthClient.STORAGE_KEY, expired.to_json())

    sess = _client(server, storage=storage).get_session()
    assert sess is not None
    assert sess.access_token != "old"
    assert AuthSession.from_json(storage.get_item(AuthClient.STORAGE_KEY)).access_token == sess.access_token


def test_revoked_refresh_token_clears_session(server):
    storage = MemoryStorage()
    expired = AuthSession(access_token="old", refresh_token="revoked", expires_at=1, user={"id": "u1"})
    storage.set_item(AuthClient.STORAGE_KEY, expired.to_json())

    assert _client(server, storage=storage).get_session() is None
    assert storage.keys() == []


def test_expired_session_without_auto_refresh(server):
    storage = MemoryStorage()
    expired = AuthSession(access_token="old", refresh_token="r", expires_at=1, user={"id": "u1"})
    storage.set_item(AuthClient.STORAGE_KEY, expired.to_json())

    assert _client(server, storage=storage, auto_refresh_token=False).get_session() is None
    assert server.requests == []


def test_unparsable_expiry_is_no_session():
    assert AuthSession.from_payload({"access_token": "t", "expires_in": "soon"}) is None
    assert AuthSession.from_payload({"access_token": "t", "expires_at": "never"}) is None


def test_sign_up_with_unparsable_session_still_returns_user(server):
    server.signup_override = (
        200,
        {"access_token": "t", "expires_in": "soon", "user": {"id": "u-1", "email": "a@x.com", "identities": [{}]}},
    )
    storage = MemoryStorage()
    client = _client(server, storage=storage)
    payload = client.sign_up("a@x.com", "secret1")
    assert payload["user"]["id"] == "u-1"
    assert storage.keys() == []
