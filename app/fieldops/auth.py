from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, url_for
from sqlalchemy.exc import SQLAlchemyError

from app.fieldops.audit import record_event
from app.fieldops.auth_client import (
    AuthApiError,
    AuthClient,
    AuthError,
    AuthSettings,
    FlaskSessionStorage,
    auth_settings_from_config,
)
from app.fieldops.db import db_session
from app.fieldops.models import User

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def auth_settings() -> AuthSettings:
    return auth_settings_from_config(current_app.config, current_app.extensions.get("auth_handlers", ()))


def shared_auth_client() -> AuthClient:
    """
    The operator's own auth client: tokens live in the signed session cookie and are
    refreshed on demand. Never use it to sign up other people.
    """
    return AuthClient(auth_settings(), storage=FlaskSessionStorage())


def load_current_user() -> None:
    """
    Loads g.current_user (the operator's profile) from the stored auth session.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None
    if request.path.startswith(("/static/", "/health", "/healthz")):
        return

    client = shared_auth_client()
    try:
        sess = client.get_session()
    except AuthError as e:
        current_app.logger.warning("load_current_user: auth session unavailable: %s", e)
        return
    if sess is None or not sess.user_id:
        return

    try:
        user = db_session().get(User, sess.user_id)
    except SQLAlchemyError as e:
        current_app.logger.error("load_current_user DB error: %s", e)
        return
    if not user or not user.is_active:
        return
    g.current_user = user


@bp.get("/login")
def login_get():
    nxt = (request.args.get("next") or "").strip()
    return render_template("auth/login.html", next=nxt)


@bp.post("/login")
def login_post():
    email = (request.form.get("email") or "").strip().lower()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("auth.login_get"))

    _record_attempt(ip)

    s = db_session()
    client = shared_auth_client()
    try:
        sess = client.sign_in_with_password(email, password)
    except AuthApiError:
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
            metadata={"email": email},
        )
        s.commit()
        flash("Invalid credentials.", "danger")
        return redirect(url_for("auth.login_get"))
    except AuthError:
        current_app.logger.exception("Login failed: auth service unavailable (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        flash("The authentication service is unavailable. Please try again.", "danger")
        return redirect(url_for("auth.login_get"))

    user = s.get(User, sess.user_id)
    if not user or not user.is_active:
        # Valid login but no active console profile: do not keep the session around.
        try:
            client.sign_out()
        except AuthError as e:
            current_app.logger.warning("Sign-out after rejected login failed: %s", e)
        flash("Invalid credentials.", "danger")
        return redirect(url_for("auth.login_get"))

    _login_attempts[ip].clear()
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=user.id)
    s.commit()
    # Optional "next" redirect (only allow local paths to avoid open redirects).
    if nxt.startswith("/") and not nxt.startswith("//"):
        return redirect(nxt)
    return redirect(url_for("routes.index"))


@bp.get("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=user.id)
        s.commit()
    try:
        shared_auth_client().sign_out()
    except AuthError as e:
        current_app.logger.warning("Token revocation failed during logout: %s", e)
    return redirect(url_for("routes.index"))
