from __future__ import annotations

import http.client
import json
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any


class AuthError(RuntimeError):
    pass


class AuthApiError(AuthError):
    """The authentication service answered with a 4xx error."""

    def __init__(self, message: str, *, status: int, error_code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.error_code = error_code


class AuthRetryableError(AuthError):
    """Network failure, timeout, 5xx or unreadable response."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


# ---------------------------------------------------------------------------
# Session storage
# ---------------------------------------------------------------------------


class SessionStorage:
    def get_item(self, key: str) -> str | None:
        raise NotImplementedError

    def set_item(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove_item(self, key: str) -> None:
        raise NotImplementedError


class MemoryStorage(SessionStorage):
    """Private key/value store; lives exactly as long as its owner."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._items)


class FlaskSessionStorage(SessionStorage):
    """Stores the console operator's tokens in the signed Flask session cookie."""

    def get_item(self, key: str) -> str | None:
        from flask import session

        return session.get(key)

    def set_item(self, key: str, value: str) -> None:
        from flask import session

        session[key] = value

    def remove_item(self, key: str) -> None:
        from flask import session

        session.pop(key, None)


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class StripAuthorizationHandler(urllib.request.BaseHandler):
    """Request processor that drops any Authorization header before it leaves the process."""

    # Run after every other request processor so nothing can re-add the header.
    handler_order = 1000

    def http_request(self, req: urllib.request.Request) -> urllib.request.Request:
        req.remove_header("Authorization")
        return req

    https_request = http_request


def build_opener(*, strip_authorization: bool = False, handlers: tuple = ()) -> urllib.request.OpenerDirector:
    chain = list(handlers)
    if strip_authorization:
        chain.append(StripAuthorizationHandler())
    return urllib.request.build_opener(*chain)


@dataclass(frozen=True)
class AuthSettings:
    base_url: str
    api_key: str
    timeout_seconds: int = 30
    password_min_length: int = 6
    # Extra urllib handlers (proxies, TLS contexts) installed on every auth transport.
    handlers: tuple = field(default=(), compare=False)


def auth_settings_from_config(config: dict, handlers: tuple = ()) -> AuthSettings:
    return AuthSettings(
        base_url=(config.get("AUTH_URL") or "").strip().rstrip("/"),
        api_key=(config.get("AUTH_API_KEY") or "").strip(),
        timeout_seconds=int(config.get("AUTH_TIMEOUT_SECONDS") or 30),
        password_min_length=int(config.get("AUTH_PASSWORD_MIN_LENGTH") or 6),
        handlers=tuple(handlers),
    )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthSession:
    access_token: str
    refresh_token: str
    expires_at: int | None
    user: dict[str, Any]

    @property
    def user_id(self) -> str | None:
        uid = self.user.get("id")
        return str(uid) if uid else None

    def is_expired(self, now: float | None = None, *, margin_seconds: int = 10) -> bool:
        if self.expires_at is None:
            return False
        now = time.time() if now is None else now
        return self.expires_at - margin_seconds <= now

    def to_json(self) -> str:
        return json.dumps(
            {
                "access_token": self.access_token,
                "refresh_token": self.refresh_token,
                "expires_at": self.expires_at,
                "user": self.user,
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str | None) -> AuthSession | None:
        if not raw:
            return None
        try:
            return cls.from_payload(json.loads(raw))
        except (TypeError, ValueError):
            return None

    @classmethod
    def from_payload(cls, payload: Any) -> AuthSession | None:
        """Build a session from a token response; None when the payload holds no session."""
        if not isinstance(payload, dict):
            return None
        access_token = payload.get("access_token")
        if not access_token:
            return None
        try:
            expires_at = payload.get("expires_at")
            if expires_at is None and payload.get("expires_in") is not None:
                expires_at = int(time.time()) + int(payload["expires_in"])
            expires_at = int(expires_at) if expires_at is not None else None
        except (TypeError, ValueError):
            return None
        user = payload.get("user") if isinstance(payload.get("user"), dict) else {}
        return cls(
            access_token=str(access_token),
            refresh_token=str(payload.get("refresh_token") or ""),
            expires_at=expires_at,
            user=user,
        )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class AuthClient:
    """
    Minimal client for a GoTrue-compatible authentication REST service.

    `persist_session` decides whether sessions returned by the service are written to
    `storage` or only kept on this instance; `auto_refresh_token` lets `get_session()`
    trade an expired access token for a new one.
    """

    STORAGE_KEY = "fieldops.auth.token"

    def __init__(
        self,
        settings: AuthSettings,
        *,
        storage: SessionStorage,
        persist_session: bool = True,
        auto_refresh_token: bool = True,
        opener: urllib.request.OpenerDirector | None = None,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.persist_session = persist_session
        self.auto_refresh_token = auto_refresh_token
        self.opener = opener or build_opener(handlers=settings.handlers)
        self._memory_session: AuthSession | None = None

    # -- transport ---------------------------------------------------------

    def request_json(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        access_token: str | None = None,
    ) -> dict[str, Any]:
        """
        Single-shot request; never retried here because sign-up is not idempotent.
        """
        if not self.settings.base_url:
            raise AuthRetryableError("AUTH_URL is not configured")
        url = self.settings.base_url + path
        if params:
            url += "?" + urllib.parse.urlencode({k: v for k, v in params.items() if v is not None})

        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(url, data=data, method=method)
        req.add_header("apikey", self.settings.api_key)
        req.add_header("Accept", "application/json")
        if data is not None:
            req.add_header("Content-Type", "application/json")
        if access_token:
            req.add_header("Authorization", f"Bearer {access_token}")

        try:
            with self.opener.open(req, timeout=self.settings.timeout_seconds) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            raise self._error_from_http(e, path) from e
        except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
            raise AuthRetryableError(f"Auth service unreachable ({path}): {e}") from e

        if not raw:
            return {}
        try:
            payload = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise AuthRetryableError(f"Invalid JSON from auth service ({path})") from e
        return payload if isinstance(payload, dict) else {}

    @staticmethod
    def _error_from_http(e: urllib.error.HTTPError, path: str) -> AuthError:
        try:
            body = e.read().decode("utf-8", errors="ignore")
        except OSError:
            body = ""
        message = body[:300]
        error_code: str | None = None
        try:
            j = json.loads(body) if body else {}
        except ValueError:
            j = {}
        if isinstance(j, dict):
            message = str(j.get("msg") or j.get("message") or j.get("error_description") or j.get("error") or message)
            raw_code = j.get("error_code") or j.get("error")
            error_code = str(raw_code) if isinstance(raw_code, str) else None
        if e.code >= 500:
            return AuthRetryableError(f"HTTP {e.code} from auth service ({path}): {message}", status=e.code)
        return AuthApiError(message or f"HTTP {e.code}", status=e.code, error_code=error_code)

    # -- session storage ---------------------------------------------------

    def _save_session(self, sess: AuthSession) -> None:
        if self.persist_session:
            self.storage.set_item(self.STORAGE_KEY, sess.to_json())
        else:
            self._memory_session = sess

    def _load_session(self) -> AuthSession | None:
        if self.persist_session:
            return AuthSession.from_json(self.storage.get_item(self.STORAGE_KEY))
        return self._memory_session

    def _remove_session(self) -> None:
        if self.persist_session:
            self.storage.remove_item(self.STORAGE_KEY)
        self._memory_session = None

    # -- operations --------------------------------------------------------

    def sign_up(self, email: str, password: str) -> dict[str, Any]:
        """
        Register a new identity and return the raw response.

        When the service auto-confirms it answers with a full session; that session is
        saved exactly like a login would save it.
        """
        payload = self.request_json("POST", "/signup", body={"email": email, "password": password})
        sess = AuthSession.from_payload(payload)
        if sess is not None:
            self._save_session(sess)
        return payload

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        payload = self.request_json(
            "POST", "/token", params={"grant_type": "password"}, body={"email": email, "password": password}
        )
        sess = AuthSession.from_payload(payload)
        if sess is None or not sess.user_id:
            raise AuthRetryableError("Auth service returned no session for password grant")
        self._save_session(sess)
        return sess

    def refresh_session(self, refresh_token: str) -> AuthSession:
        payload = self.request_json(
            "POST", "/token", params={"grant_type": "refresh_token"}, body={"refresh_token": refresh_token}
        )
        sess = AuthSession.from_payload(payload)
        if sess is None:
            raise AuthRetryableError("Auth service returned no session for refresh grant")
        self._save_session(sess)
        return sess

    def get_session(self) -> AuthSession | None:
        sess = self._load_session()
        if sess is None or not sess.is_expired():
            return sess
        if not self.auto_refresh_token or not sess.refresh_token:
            return None
        try:
            return self.refresh_session(sess.refresh_token)
        except AuthApiError:
            # Refresh token revoked or reused; the stored session is dead.
            self._remove_session()
            return None

    def sign_out(self) -> None:
        sess = self._load_session()
        try:
            if sess is not None:
                self.request_json("POST", "/logout", access_token=sess.access_token)
        finally:
            self._remove_session()

    def reset_password_for_email(self, email: str, *, redirect_to: str | None = None) -> None:
        self.request_json("POST", "/recover", params={"redirect_to": redirect_to}, body={"email": email})
