
from flask import abort, g, redirect, request, url_for

from app.fieldops.models import User

ACTIONS = ("view", "create", "edit", "delete")


def user_has_permission(user: User | None, page_name: str, action: str = "view") -> bool:
    """
    Page-level gate (e.g. `can_create` on "Sellers"). Admin roles pass every check.
    """
    if action not in ACTIONS:
        raise ValueError(f"Unknown permission action: {action}")
    if not user or not user.is_active or user.role is None:
        return False
    if user.role.is_admin:
        return True
    for perm in user.role.permissions:
        if perm.page_name == page_name:
            return bool(getattr(perm, f"can_{action}"))
    return False


def enforce_permission(page_name: str, action: str = "view"):
    """
    Returns a login redirect for anonymous users, aborts with 403 when the permission
    is missing, and returns None when the request may proceed.
    """
    user: User | None = getattr(g, "current_user", None)
    # Unauthenticated → redirect to login (UX + reduces confusion).
    if not user or not user.is_active:
        if request.is_json:
            abort(401)
        nxt = request.full_path or request.path
        # Avoid trailing '?' from full_path when there is no query string.
        if nxt.endswith("?"):
            nxt = nxt[:-1]
        return redirect(url_for("auth.login_get", next=nxt))
    # Authenticated but unauthorized → 403
    if not user_has_permission(user, page_name, action):
        g.missing_permission = f"{page_name}.{action}"
        abort(403)
    return None
