from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from app.fieldops.audit import record_event
from app.fieldops.auth_client import AuthApiError, AuthRetryableError, AuthSettings
from app.fieldops.models import Role, User
from app.fieldops.modules.provisioning.attempt import ProvisioningAttempt, State
from app.fieldops.modules.provisioning.compensator import compensate
from app.fieldops.modules.provisioning.context import IsolatedContext, create_isolated_context
from app.fieldops.modules.provisioning.errors import ProvisioningError, Rejected, TransportFailure
from app.fieldops.modules.provisioning.issuer import is_valid_email, issue_credential
from app.fieldops.modules.provisioning.kinds import ROLE_DEFAULT, ROLE_REQUIRED, RoleKind
from app.fieldops.modules.provisioning.materializer import get_profile, insert_profile, update_profile
from app.fieldops.modules.provisioning.role_records import (
    find_role_record,
    get_role_record,
    insert_role_record,
    update_role_record,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

_TRUE_VALUES = frozenset({"1", "true", "on", "yes", "y"})


def parse_bool(value: Any) -> bool | None:
    """Form/JSON boolean; None when the field was not sent."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    return str(value).strip()


@dataclass(frozen=True)
class AccountDraft:
    email: str
    display_name: str
    role_id: str | None = None
    is_active: bool = True
    code: str | None = None
    phone_number: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> AccountDraft:
        is_active = parse_bool(data.get("is_active"))
        return cls(
            email=(_clean(data.get("email")) or "").lower(),
            display_name=_clean(data.get("full_name") or data.get("name")) or "",
            role_id=_clean(data.get("role_id")) or None,
            is_active=True if is_active is None else is_active,
            code=_clean(data.get("code")) or None,
            phone_number=_clean(data.get("phone_number")) or None,
        )


@dataclass(frozen=True)
class AccountPatch:
    """Edit-flow changes; `None` means "leave as is"."""

    display_name: str | None = None
    is_active: bool | None = None
    role_id: str | None = None
    code: str | None = None
    phone_number: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> AccountPatch:
        # A key that is present but blank is a change (and fails validation), not "unchanged".
        name_key = "full_name" if "full_name" in data else "name"
        return cls(
            display_name=_clean(data.get(name_key)),
            is_active=parse_bool(data.get("is_active")),
            role_id=_clean(data.get("role_id")) or None,
            code=_clean(data.get("code")),
            phone_number=_clean(data.get("phone_number")),
        )


@dataclass(frozen=True)
class ProvisionedAccount:
    kind: RoleKind
    # None for a role record that has no login.
    profile: User | None
    role_record: Any | None
    attempt: ProvisioningAttempt

    def to_dict(self) -> dict:
        out: dict[str, Any] = {
            "kind": self.kind.key,
            "state": self.attempt.state.value,
            "profile": None,
            "role_record": None,
        }
        p = self.profile
        if p is not None:
            out["profile"] = {
                "id": p.id,
                "email": p.email,
                "full_name": p.full_name,
                "role_id": p.role_id,
                "is_active": p.is_active,
                "created_by": p.created_by,
            }
        r = self.role_record
        if r is not None:
            out["role_record"] = {
                "id": r.id,
                "code": getattr(r, self.kind.code_field),
                "name": r.name,
                "email": r.email,
                "phone_number": r.phone_number,
                "is_active": r.is_active,
                "user_id": r.user_id,
                "created_by": r.created_by,
            }
        return out


# ---------------------------------------------------------------------------
# Role lookup
# ---------------------------------------------------------------------------


def list_roles(s: "Session") -> list[dict[str, str]]:
    roles = s.query(Role).order_by(Role.name.asc()).all()
    return [{"id": r.id, "name": r.name} for r in roles]


def find_role_by_name(s: "Session", name: str) -> Role | None:
    return s.query(Role).filter(Role.name == name).one_or_none()


def resolve_role_id(s: "Session", kind: RoleKind, requested_role_id: str | None) -> str:
    step = State.START.value
    try:
        if kind.role_policy == ROLE_REQUIRED:
            if not requested_role_id:
                raise Rejected("Role is required.", step=step, entity="role")
            return requested_role_id
        if kind.role_policy == ROLE_DEFAULT and requested_role_id:
            return requested_role_id
        role = find_role_by_name(s, kind.role_name or "")
    except SQLAlchemyError as e:
        raise TransportFailure(
            "The database could not be reached. Please try again.", step=step, entity="role", detail=str(e)
        ) from e
    if role is None:
        raise Rejected(f"The '{kind.role_name}' role is not configured.", step=step, entity="role")
    return role.id


def _validate_draft(kind: RoleKind, draft: AccountDraft) -> None:
    step = State.START.value
    if not draft.email:
        raise Rejected("Email is required.", step=step, entity="identity")
    if not is_valid_email(draft.email):
        raise Rejected("Invalid email format.", step=step, entity="identity")
    if not draft.display_name:
        raise Rejected("Name is required.", step=step, entity="profile")
    if kind.requires_role_record and not draft.code:
        raise Rejected(f"{kind.code_label} is required.", step=step, entity=kind.key)


def _record_failure(s: "Session", kind: RoleKind, attempt: ProvisioningAttempt, err: ProvisioningError, actor: User | None) -> None:
    """Audit a failed create; an audit write failure must not hide `err`."""
    try:
        record_event(
            s,
            actor=actor,
            action="account.create_failed",
            entity_type=kind.label,
            entity_id=attempt.identity_id,
            reason=err.message,
            metadata={
                "attempt": attempt.id,
                "email": attempt.email,
                "code": err.code,
                "step": err.step,
                "compensation_failed": err.compensation_error is not None,
            },
        )
        if attempt.identity_id is not None:
            record_event(
                s,
                actor=actor,
                action="account.orphaned_identity",
                entity_type="Identity",
                entity_id=attempt.identity_id,
                reason="Identity exists in the authentication service without a profile.",
                metadata={"attempt": attempt.id, "email": attempt.email},
            )
        s.commit()
    except SQLAlchemyError:
        s.rollback()
        logger.exception("PROVISION: could not audit failed attempt=%s", attempt.id)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


def provision_account(
    s: "Session",
    kind: RoleKind,
    draft: AccountDraft,
    credential: str,
    *,
    actor: User | None,
    settings: AuthSettings,
    context_factory: Callable[[AuthSettings], IsolatedContext] = create_isolated_context,
) -> ProvisionedAccount:
    """
    Create flow: issue the identity, write the profile, write the role record.

    Raises a `ProvisioningError` subclass on failure after compensating any rows this
    attempt wrote. The identity itself can never be removed from here; an identity
    left behind is logged and audited as an orphan.
    """
    draft = replace(draft, email=(draft.email or "").strip().lower(), display_name=(draft.display_name or "").strip())
    attempt = ProvisioningAttempt(kind=kind.key, email=draft.email)
    try:
        _validate_draft(kind, draft)
        role_id = resolve_role_id(s, kind, draft.role_id)
        attempt.advance(State.ISSUE_CREDENTIAL)
        # Fresh context per attempt, dropped when this function returns.
        ctx = context_factory(settings)
        identity_id = issue_credential(ctx, attempt, draft.email, credential)
    except ProvisioningError as e:
        attempt.fail(e.code)
        _record_failure(s, kind, attempt, e, actor)
        raise

    role_record = None
    try:
        attempt.advance(State.WRITE_PROFILE)
        profile = insert_profile(
            s,
            attempt,
            identity_id=identity_id,
            email=draft.email,
            full_name=draft.display_name,
            role_id=role_id,
            is_active=draft.is_active,
            actor=actor,
        )
        if kind.requires_role_record:
            attempt.advance(State.WRITE_ROLE_RECORD)
            role_record = insert_role_record(
                s,
                kind,
                attempt,
                identity_id=identity_id,
                code=draft.code or "",
                name=draft.display_name,
                email=draft.email,
                phone_number=draft.phone_number,
                is_active=draft.is_active,
                actor=actor,
            )
    except ProvisioningError as e:
        if attempt.wrote_profile or attempt.wrote_role_record:
            attempt.advance(State.COMPENSATE)
            report = compensate(s, kind, attempt, actor=actor)
            if report.error is not None:
                e.compensation_error = report.error
        logger.error(
            "PROVISION: orphaned identity=%s email=%s attempt=%s failed at %s (%s)",
            identity_id,
            draft.email,
            attempt.id,
            e.step,
            e.code,
        )
        attempt.fail(e.code)
        _record_failure(s, kind, attempt, e, actor)
        raise

    attempt.advance(State.DONE)
    return ProvisionedAccount(kind=kind, profile=profile, role_record=role_record, attempt=attempt)


def update_account(
    s: "Session",
    kind: RoleKind,
    profile_id: str,
    patch: AccountPatch,
    *,
    actor: User | None,
) -> ProvisionedAccount:
    """
    Edit flow: profile first, then the role record when one is linked. A role-record
    failure leaves the already committed profile update in place.
    """
    attempt = ProvisioningAttempt(kind=kind.key)
    try:
        attempt.advance(State.UPDATE_PROFILE)
        profile = get_profile(s, profile_id)
        attempt.email = profile.email
        update_profile(
            s,
            profile,
            full_name=patch.display_name,
            is_active=patch.is_active,
            role_id=patch.role_id if kind.role_editable else None,
            actor=actor,
        )
        attempt.profile_id = profile.id

        role_record = find_role_record(s, kind, profile.id)
        if role_record is not None:
            attempt.advance(State.UPDATE_ROLE_RECORD)
            update_role_record(
                s,
                kind,
                role_record,
                code=patch.code,
                phone_number=patch.phone_number,
                actor=actor,
            )
            attempt.role_record_id = role_record.id
        elif kind.requires_role_record:
            logger.info("PROVISION: profile=%s has no %s record; profile-only edit", profile.id, kind.key)
    except ProvisioningError as e:
        attempt.fail(e.code)
        raise

    attempt.advance(State.DONE)
    return ProvisionedAccount(kind=kind, profile=profile, role_record=role_record, attempt=attempt)


def update_role_record_account(
    s: "Session",
    kind: RoleKind,
    record_id: str,
    patch: AccountPatch,
    *,
    actor: User | None,
) -> ProvisionedAccount:
    """
    Edit flow entered from a seller/merchandiser record. A record linked to a login
    goes through `update_account`; a record without one has no profile step and takes
    the name and active flag itself.
    """
    record = get_role_record(s, kind, record_id)
    if record.user_id:
        return update_account(s, kind, record.user_id, patch, actor=actor)

    attempt = ProvisioningAttempt(kind=kind.key, email=record.email)
    try:
        attempt.advance(State.UPDATE_ROLE_RECORD)
        update_role_record(
            s,
            kind,
            record,
            code=patch.code,
            phone_number=patch.phone_number,
            actor=actor,
            name=patch.display_name,
            is_active=patch.is_active,
        )
        attempt.role_record_id = record.id
    except ProvisioningError as e:
        attempt.fail(e.code)
        raise

    attempt.advance(State.DONE)
    return ProvisionedAccount(kind=kind, profile=None, role_record=record, attempt=attempt)


def send_password_reset(
    settings: AuthSettings,
    email: str,
    *,
    redirect_to: str | None = None,
    context_factory: Callable[[AuthSettings], IsolatedContext] = create_isolated_context,
) -> None:
    """Ask the authentication service to email a recovery link to `email`."""
    ctx = context_factory(settings)
    try:
        ctx.client.reset_password_for_email(email, redirect_to=redirect_to)
    except AuthApiError as e:
        raise Rejected(f"Password reset was refused: {e.message}", step="reset_password", entity="identity") from e
    except AuthRetryableError as e:
        raise TransportFailure(
            "The authentication service could not be reached. Please try again.",
            step="reset_password",
            entity="identity",
            detail=str(e),
        ) from e
