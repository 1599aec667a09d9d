import http.client
import io
import json
import urllib.parse
import urllib.request
import urllib.response
import uuid

import pytest

from app.fieldops import create_app
from app.fieldops import auth as auth_module
from app.fieldops.db import session_scope
from app.fieldops.models import Base, Permission, Role, User

AUTH_URL = "http://auth.test/auth/v1"
ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin-pw"


class FakeAuthServer(urllib.request.BaseHandler):
    """
    In-process stand-in for the authentication service. Installed as a urllib handler,
    so every request still passes through the real request processors.
    """

    # Ahead of the stock HTTP handlers.
    handler_order = 10

    def __init__(self) -> None:
        self.users: dict[str, dict] = {}
        self.requests: list[dict] = []
        # (status, payload) forced onto the next /signup calls.
        self.signup_override: tuple[int, dict] | None = None

    def add_user(self, email: str, password: str) -> str:
        uid = str(uuid.uuid4())
        self.users[email] = {"id": uid, "email": email, "password": password}
        return uid

    def requests_to(self, path: str) -> list[dict]:
        return [r for r in self.requests if r["path"] == path]

    # -- urllib plumbing ------------------------------------------------------

    def http_open(self, req: urllib.request.Request):
        parts = urllib.parse.urlsplit(req.full_url)
        path = parts.path[len(urllib.parse.urlsplit(AUTH_URL).path):]
        body = json.loads(req.data.decode("utf-8")) if req.data else {}
        record = {
            "method": req.get_method(),
            "path": path,
            "params": dict(urllib.parse.parse_qsl(parts.query)),
            "headers": {k.lower(): v for k, v in req.header_items()},
            "body": body,
        }
        self.requests.append(record)
        status, payload = self._dispatch(record)
        return self._response(req, status, payload)

    https_open = http_open

    @staticmethod
    def _response(req, status: int, payload):
        raw = json.dumps(payload).encode("utf-8") if payload is not None else b""
        headers = http.client.HTTPMessage()
        headers["Content-Type"] = "application/json"
        resp = urllib.response.addinfourl(io.BytesIO(raw), headers, req.full_url, status)
        resp.msg = "OK" if status < 400 else "Error"
        return resp

    # -- endpoints ------------------------------------------------------------

    def _session_for(self, user: dict) -> dict:
        return {
            "access_token": f"access-{user['id']}-{uuid.uuid4().hex[:8]}",
            "refresh_token": f"refresh-{user['id']}",
            "token_type": "bearer",
            "expires_in": 3600,
            "user": {"id": user["id"], "email": user["email"], "identities": [{"provider": "email"}]},
        }

    def _dispatch(self, r: dict):
        path, body = r["path"], r["body"]
        if r["headers"].get("apikey") != "anon-key":
            return 401, {"msg": "Invalid API key"}

        if path == "/signup":
            if self.signup_override is not None:
                return self.signup_override
            email = body.get("email") or ""
            if email in self.users:
                return 422, {"error_code": "user_already_exists", "msg": "User already registered"}
            if len(body.get("password") or "") < 6:
                return 422, {"error_code": "weak_password", "msg": "Password should be at least 6 characters."}
            self.add_user(email, body["password"])
            # Auto-confirm: the service hands back a full session for the new user.
            return 200, self._session_for(self.users[email])

        if path == "/token":
            grant = r["params"].get("grant_type")
            if grant == "password":
                user = self.users.get(body.get("email") or "")
                if user is None or user["password"] != body.get("password"):
                    return 400, {"error": "invalid_grant", "error_description": "Invalid login credentials"}
                return 200, self._session_for(user)
            if grant == "refresh_token":
                for user in self.users.values():
                    if body.get("refresh_token") == f"refresh-{user['id']}":
                        return 200, self._session_for(user)
                return 400, {"error": "invalid_grant", "error_description": "Invalid Refresh Token"}
            return 400, {"error": "unsupported_grant_type"}

        if path == "/logout":
            return 204, None

        if path == "/recover":
            return 200, {}

        return 404, {"msg": "Not found"}


def seed_roles(s) -> dict[str, Role]:
    admin = Role(name="Admin", description="Full access", is_admin=True)
    seller = Role(name="Seller", description="Field seller")
    merch = Role(name="Merchandiser", description="Field merchandiser")
    viewer = Role(name="Viewer", description="Read only")
    viewer.permissions.append(Permission(page_name="Sellers", can_view=True))
    s.add_all([admin, seller, merch, viewer])
    s.flush()
    return {"Admin": admin, "Seller": seller, "Merchandiser": merch, "Viewer": viewer}


@pytest.fixture()
def auth_server():
    return FakeAuthServer()


@pytest.fixture()
def app(tmp_path, monkeypatch, auth_server):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("AUTH_URL", AUTH_URL)
    monkeypatch.setenv("AUTH_API_KEY", "anon-key")
    monkeypatch.delenv("AUTH_PASSWORD_MIN_LENGTH", raising=False)
    auth_module._login_attempts.clear()

    app = create_app()
    app.config["TESTING"] = True
    app.extensions["auth_handlers"].append(auth_server)

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        roles = seed_roles(s)
        admin_id = auth_server.add_user(ADMIN_EMAIL, ADMIN_PASSWORD)
        s.add(User(id=admin_id, email=ADMIN_EMAIL, full_name="Admin", role_id=roles["Admin"].id, is_active=True))

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def login(client, email: str = ADMIN_EMAIL, password: str = ADMIN_PASSWORD):
    return client.post("/auth/login", data={"email": email, "password": password}, follow_redirects=False)


def csrf_headers(client) -> dict[str, str]:
    client.get("/")
    with client.session_transaction() as sess:
        return {"X-CSRF-Token": sess["csrf_token"]}


def stored_token(client) -> str | None:
    with client.session_transaction() as sess:
        return sess.get("fieldops.auth.token")


@pytest.fixture()
def admin_client(client):
    r = login(client)
    assert r.status_code == 302
    return client
