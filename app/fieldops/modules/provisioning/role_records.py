from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import MultipleResultsFound, SQLAlchemyError

from app.fieldops.audit import record_event
from app.fieldops.models import User, new_uuid
from app.fieldops.modules.provisioning.attempt import ProvisioningAttempt, State
from app.fieldops.modules.provisioning.errors import Rejected, TransportFailure, classify_db_error
from app.fieldops.modules.provisioning.kinds import RoleKind

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def _commit(s: "Session", kind: RoleKind, *, step: str, rejected_message: str) -> None:
    try:
        s.commit()
    except SQLAlchemyError as e:
        s.rollback()
        raise classify_db_error(
            e,
            step=step,
            entity=kind.key,
            unique_message=f"{kind.code_label} is already in use.",
            rejected_message=rejected_message,
        ) from e


def insert_role_record(
    s: "Session",
    kind: RoleKind,
    attempt: ProvisioningAttempt,
    *,
    identity_id: str,
    code: str,
    name: str,
    email: str,
    phone_number: str | None,
    is_active: bool,
    actor: User | None,
) -> Any:
    """Insert the seller/merchandiser row linked to `identity_id` (one committed write)."""
    if not kind.requires_role_record:
        raise ValueError(f"Role kind {kind.key} has no role record")

    now = datetime.utcnow()
    record = kind.model(
        id=new_uuid(),
        name=name,
        email=email,
        phone_number=phone_number,
        is_active=is_active,
        user_id=identity_id,
        created_by=actor.id if actor else None,
        created_at=now,
        updated_at=now,
    )
    setattr(record, kind.code_field, code)
    s.add(record)
    record_event(
        s,
        actor=actor,
        action=f"{kind.key}.create",
        entity_type=kind.model.__name__,
        entity_id=record.id,
        metadata={kind.code_field: code, "name": name, "user_id": identity_id, "attempt": attempt.id},
    )
    _commit(s, kind, step=State.WRITE_ROLE_RECORD.value, rejected_message=f"The {kind.label.lower()} record could not be saved.")
    attempt.role_record_id = record.id
    logger.info("PROVISION: attempt=%s wrote %s=%s", attempt.id, kind.key, record.id)
    return record


def find_role_record(s: "Session", kind: RoleKind, identity_id: str) -> Any | None:
    if not kind.requires_role_record:
        return None
    try:
        return s.query(kind.model).filter(kind.model.user_id == identity_id).one_or_none()
    except MultipleResultsFound as e:
        raise Rejected(
            f"More than one {kind.label.lower()} record is linked to this account.",
            step=State.UPDATE_ROLE_RECORD.value,
            entity=kind.key,
            detail=str(e),
        ) from e
    except SQLAlchemyError as e:
        raise TransportFailure(
            "The database could not be reached. Please try again.",
            step=State.UPDATE_ROLE_RECORD.value,
            entity=kind.key,
            detail=str(e),
        ) from e


def get_role_record(s: "Session", kind: RoleKind, record_id: str) -> Any:
    if not kind.requires_role_record:
        raise ValueError(f"Role kind {kind.key} has no role record")
    try:
        record = s.get(kind.model, record_id)
    except SQLAlchemyError as e:
        raise TransportFailure(
            "The database could not be reached. Please try again.",
            step=State.UPDATE_ROLE_RECORD.value,
            entity=kind.key,
            detail=str(e),
        ) from e
    if record is None:
        raise Rejected("Account not found.", step=State.UPDATE_ROLE_RECORD.value, entity=kind.key)
    return record


def update_role_record(
    s: "Session",
    kind: RoleKind,
    record: Any,
    *,
    code: str | None,
    phone_number: str | None,
    actor: User | None,
    name: str | None = None,
    is_active: bool | None = None,
) -> dict:
    """
    Apply the fields the role record owns (business code, phone); `None` leaves a field
    unchanged. The record id and its identity link are never modified.

    `name` and `is_active` are only passed for records without a login: once a profile
    exists it owns both and the record keeps its creation-time copy.
    """
    step = State.UPDATE_ROLE_RECORD.value
    changes: dict[str, dict] = {}

    if name is not None:
        new_name = name.strip()
        if not new_name:
            raise Rejected("Name is required.", step=step, entity=kind.key)
        if new_name != record.name:
            changes["name"] = {"old": record.name, "new": new_name}
            record.name = new_name

    if is_active is not None and is_active != record.is_active:
        changes["is_active"] = {"old": record.is_active, "new": is_active}
        record.is_active = is_active

    if code is not None:
        new_code = code.strip()
        if not new_code:
            raise Rejected(f"{kind.code_label} is required.", step=step, entity=kind.key)
        old_code = getattr(record, kind.code_field)
        if new_code != old_code:
            changes[kind.code_field] = {"old": old_code, "new": new_code}
            setattr(record, kind.code_field, new_code)

    if phone_number is not None:
        new_phone = phone_number.strip() or None
        if new_phone != record.phone_number:
            changes["phone_number"] = {"old": record.phone_number, "new": new_phone}
            record.phone_number = new_phone

    if not changes:
        return changes

    record.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action=f"{kind.key}.update",
        entity_type=kind.model.__name__,
        entity_id=record.id,
        metadata={"user_id": record.user_id, "changes": changes},
    )
    _commit(s, kind, step=step, rejected_message=f"The {kind.label.lower()} record could not be updated.")
    return changes
