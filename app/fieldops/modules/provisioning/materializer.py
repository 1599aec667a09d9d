from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from app.fieldops.audit import record_event
from app.fieldops.models import User
from app.fieldops.modules.provisioning.attempt import ProvisioningAttempt, State
from app.fieldops.modules.provisioning.errors import Rejected, TransportFailure, classify_db_error

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def _commit(s: "Session", *, step: str, unique_message: str, rejected_message: str) -> None:
    try:
        s.commit()
    except SQLAlchemyError as e:
        s.rollback()
        raise classify_db_error(
            e,
            step=step,
            entity="profile",
            unique_message=unique_message,
            rejected_message=rejected_message,
        ) from e


def insert_profile(
    s: "Session",
    attempt: ProvisioningAttempt,
    *,
    identity_id: str,
    email: str,
    full_name: str,
    role_id: str | None,
    is_active: bool,
    actor: User | None,
) -> User:
    """Insert the profile row for a freshly issued identity (one committed write)."""
    now = datetime.utcnow()
    profile = User(
        id=identity_id,
        email=email,
        full_name=full_name,
        role_id=role_id,
        is_active=is_active,
        created_by=actor.id if actor else None,
        created_at=now,
        updated_at=now,
    )
    s.add(profile)
    record_event(
        s,
        actor=actor,
        action="profile.create",
        entity_type="User",
        entity_id=identity_id,
        metadata={"email": email, "full_name": full_name, "role_id": role_id, "attempt": attempt.id},
    )
    _commit(
        s,
        step=State.WRITE_PROFILE.value,
        unique_message="A profile with this email already exists.",
        rejected_message="The profile could not be saved.",
    )
    attempt.profile_id = profile.id
    logger.info("PROVISION: attempt=%s wrote profile=%s", attempt.id, profile.id)
    return profile


def get_profile(s: "Session", profile_id: str) -> User:
    try:
        profile = s.get(User, profile_id)
    except SQLAlchemyError as e:
        raise TransportFailure(
            "The database could not be reached. Please try again.",
            step=State.UPDATE_PROFILE.value,
            entity="profile",
            detail=str(e),
        ) from e
    if profile is None:
        raise Rejected("Account not found.", step=State.UPDATE_PROFILE.value, entity="profile")
    return profile


def update_profile(
    s: "Session",
    profile: User,
    *,
    full_name: str | None,
    is_active: bool | None,
    role_id: str | None,
    actor: User | None,
) -> dict:
    """
    Apply the mutable profile fields. `None` leaves a field unchanged; id and email
    are never touched. Returns the applied changes (empty when nothing differed).
    """
    changes: dict[str, dict] = {}

    if full_name is not None:
        new_name = full_name.strip()
        if not new_name:
            raise Rejected("Name is required.", step=State.UPDATE_PROFILE.value, entity="profile")
        if new_name != profile.full_name:
            changes["full_name"] = {"old": profile.full_name, "new": new_name}
            profile.full_name = new_name

    if is_active is not None and is_active != profile.is_active:
        changes["is_active"] = {"old": profile.is_active, "new": is_active}
        profile.is_active = is_active

    if role_id is not None and role_id != profile.role_id:
        changes["role_id"] = {"old": profile.role_id, "new": role_id}
        profile.role_id = role_id

    if not changes:
        return changes

    profile.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="profile.update",
        entity_type="User",
        entity_id=profile.id,
        metadata={"email": profile.email, "changes": changes},
    )
    _commit(
        s,
        step=State.UPDATE_PROFILE.value,
        unique_message="Another profile already uses these values.",
        rejected_message="The profile could not be updated.",
    )
    return changes
