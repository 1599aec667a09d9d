from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, jsonify, redirect, render_template, request, url_for

from app.fieldops.auth import auth_settings
from app.fieldops.db import db_session
from app.fieldops.models import User
from app.fieldops.modules.provisioning.errors import ProvisioningError
from app.fieldops.modules.provisioning.kinds import KINDS, RoleKind, get_kind
from app.fieldops.modules.provisioning.role_records import find_role_record
from app.fieldops.modules.provisioning.service import (
    AccountDraft,
    AccountPatch,
    list_roles,
    provision_account,
    send_password_reset,
    update_account,
    update_role_record_account,
)
from app.fieldops.rbac import enforce_permission, user_has_permission

bp = Blueprint("accounts", __name__)


def _kind_or_404(slug: str) -> RoleKind:
    kind = get_kind(slug)
    if kind is None:
        abort(404)
    return kind


def _payload() -> dict:
    if request.is_json:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}
    return request.form.to_dict()


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _render_form(
    kind: RoleKind,
    *,
    values: dict,
    account: User | None = None,
    record=None,
    error: str | None = None,
    status: int = 200,
):
    s = db_session()
    return (
        render_template(
            "admin/accounts/form.html",
            kind=kind,
            slug=_slug_for(kind),
            roles=list_roles(s),
            values=values,
            account=account,
            record=record,
            error=error,
        ),
        status,
    )


def _slug_for(kind: RoleKind) -> str:
    for slug, k in KINDS.items():
        if k is kind:
            return slug
    raise KeyError(kind.key)


def _failure_response(kind: RoleKind, e: ProvisioningError, *, values: dict, account: User | None = None, record=None):
    current_app.logger.warning(
        "Account %s failed kind=%s code=%s step=%s detail=%s request_id=%s",
        "update" if account or record else "create",
        kind.key,
        e.code,
        e.step,
        e.detail,
        getattr(g, "request_id", None),
    )
    if request.is_json:
        return jsonify(e.to_dict()), e.http_status
    # Keep what the operator typed (minus the password) so the form can be resubmitted.
    values = {k: v for k, v in values.items() if k not in ("password", "csrf_token")}
    return _render_form(kind, values=values, account=account, record=record, error=e.message, status=e.http_status)


@bp.get("/roles")
def roles_list():
    user = getattr(g, "current_user", None)
    if not user or not user.is_active:
        abort(401)
    if not any(user_has_permission(user, k.page_name, "view") for k in KINDS.values()):
        abort(403)
    return jsonify({"roles": list_roles(db_session())})


@bp.get("/<slug>/new")
def new_get(slug: str):
    kind = _kind_or_404(slug)
    denied = enforce_permission(kind.page_name, "create")
    if denied is not None:
        return denied
    return _render_form(kind, values={"is_active": True})


@bp.post("/<slug>")
def create(slug: str):
    kind = _kind_or_404(slug)
    denied = enforce_permission(kind.page_name, "create")
    if denied is not None:
        return denied

    s = db_session()
    data = _payload()
    draft = AccountDraft.from_mapping(data)
    try:
        account = provision_account(
            s,
            kind,
            draft,
            str(data.get("password") or ""),
            actor=_current_user(),
            settings=auth_settings(),
        )
    except ProvisioningError as e:
        return _failure_response(kind, e, values=data)

    if request.is_json:
        return jsonify(account.to_dict()), 201
    flash(f"{kind.label} account created for {account.profile.email}.", "success")
    return redirect(url_for("accounts.edit_get", slug=slug, profile_id=account.profile.id))


@bp.get("/<slug>/<profile_id>")
def edit_get(slug: str, profile_id: str):
    kind = _kind_or_404(slug)
    denied = enforce_permission(kind.page_name, "edit")
    if denied is not None:
        return denied
    s = db_session()
    account = s.get(User, profile_id)
    if account is None:
        abort(404)
    values = {
        "email": account.email,
        "full_name": account.full_name,
        "role_id": account.role_id,
        "is_active": account.is_active,
    }
    try:
        record = find_role_record(s, kind, account.id)
    except ProvisioningError as e:
        return _render_form(kind, values=values, account=account, error=e.message, status=e.http_status)
    if record is not None:
        values.update(
            {
                "code": getattr(record, kind.code_field),
                "phone_number": record.phone_number or "",
            }
        )
    return _render_form(kind, values=values, account=account)


@bp.route("/<slug>/<profile_id>", methods=["POST", "PATCH"])
def edit(slug: str, profile_id: str):
    kind = _kind_or_404(slug)
    denied = enforce_permission(kind.page_name, "edit")
    if denied is not None:
        return denied

    s = db_session()
    data = _payload()
    if not request.is_json and "is_active" not in data:
        # Unchecked HTML checkboxes are simply absent from the form.
        data["is_active"] = "0"
    try:
        account = update_account(s, kind, profile_id, AccountPatch.from_mapping(data), actor=_current_user())
    except ProvisioningError as e:
        return _failure_response(kind, e, values=data, account=s.get(User, profile_id))

    if request.is_json:
        return jsonify(account.to_dict()), 200
    flash(f"{kind.label} account updated for {account.profile.email}.", "success")
    return redirect(url_for("accounts.edit_get", slug=slug, profile_id=profile_id))


@bp.get("/<slug>/records/<record_id>")
def record_edit_get(slug: str, record_id: str):
    kind = _kind_or_404(slug)
    if not kind.requires_role_record:
        abort(404)
    denied = enforce_permission(kind.page_name, "edit")
    if denied is not None:
        return denied
    s = db_session()
    record = s.get(kind.model, record_id)
    if record is None:
        abort(404)
    if record.user_id:
        return redirect(url_for("accounts.edit_get", slug=slug, profile_id=record.user_id))
    values = {
        "email": record.email or "",
        "full_name": record.name,
        "is_active": record.is_active,
        "code": getattr(record, kind.code_field),
        "phone_number": record.phone_number or "",
    }
    return _render_form(kind, values=values, record=record)


@bp.route("/<slug>/records/<record_id>", methods=["POST", "PATCH"])
def record_edit(slug: str, record_id: str):
    kind = _kind_or_404(slug)
    if not kind.requires_role_record:
        abort(404)
    denied = enforce_permission(kind.page_name, "edit")
    if denied is not None:
        return denied

    s = db_session()
    data = _payload()
    if not request.is_json and "is_active" not in data:
        data["is_active"] = "0"
    try:
        account = update_role_record_account(s, kind, record_id, AccountPatch.from_mapping(data), actor=_current_user())
    except ProvisioningError as e:
        return _failure_response(kind, e, values=data, record=s.get(kind.model, record_id))

    if request.is_json:
        return jsonify(account.to_dict()), 200
    record = account.role_record
    flash(f"{kind.label} record {getattr(record, kind.code_field)} updated.", "success")
    return redirect(url_for("accounts.record_edit_get", slug=slug, record_id=record.id))


@bp.post("/<slug>/<profile_id>/reset-password")
def reset_password(slug: str, profile_id: str):
    kind = _kind_or_404(slug)
    denied = enforce_permission(kind.page_name, "edit")
    if denied is not None:
        return denied

    s = db_session()
    account = s.get(User, profile_id)
    if account is None:
        abort(404)
    try:
        send_password_reset(auth_settings(), account.email, redirect_to=request.host_url)
    except ProvisioningError as e:
        current_app.logger.warning("Password reset failed for %s: %s", account.email, e.detail or e.message)
        if request.is_json:
            return jsonify(e.to_dict()), e.http_status
        flash(e.message, "danger")
        return redirect(url_for("accounts.edit_get", slug=slug, profile_id=profile_id))

    from app.fieldops.audit import record_event

    record_event(
        s,
        actor=_current_user(),
        action="account.password_reset_requested",
        entity_type="User",
        entity_id=account.id,
        metadata={"target_email": account.email},
    )
    s.commit()
    if request.is_json:
        return jsonify({"ok": True}), 202
    flash(f"Password reset email sent to {account.email}.", "success")
    return redirect(url_for("accounts.edit_get", slug=slug, profile_id=profile_id))
