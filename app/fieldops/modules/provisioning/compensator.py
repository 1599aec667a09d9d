from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from app.fieldops.audit import record_event
from app.fieldops.models import User
from app.fieldops.modules.provisioning.attempt import ProvisioningAttempt, State
from app.fieldops.modules.provisioning.errors import CompensationFailed
from app.fieldops.modules.provisioning.kinds import RoleKind

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@dataclass
class CompensationReport:
    deleted: list[str] = field(default_factory=list)
    error: CompensationFailed | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def compensate(s: "Session", kind: RoleKind, attempt: ProvisioningAttempt, *, actor: User | None = None) -> CompensationReport:
    """
    Best-effort removal of the rows `attempt` wrote, newest first. The identity in the
    authentication service is out of reach and stays behind. Never raises.
    """
    report = CompensationReport()
    # Drop whatever the failed write left pending before issuing deletes.
    s.rollback()
    try:
        if attempt.wrote_role_record and kind.requires_role_record:
            record = s.get(kind.model, attempt.role_record_id)
            if record is not None:
                s.delete(record)
                report.deleted.append(f"{kind.key}:{attempt.role_record_id}")
        if attempt.wrote_profile:
            profile = s.get(User, attempt.profile_id)
            if profile is not None:
                s.delete(profile)
                report.deleted.append(f"profile:{attempt.profile_id}")
        if report.deleted:
            record_event(
                s,
                actor=actor,
                action="account.compensate",
                entity_type="User",
                entity_id=attempt.identity_id,
                reason=f"Provisioning attempt {attempt.id} failed",
                metadata={"deleted": report.deleted, "attempt": attempt.id},
            )
        s.commit()
    except SQLAlchemyError as e:
        s.rollback()
        logger.exception(
            "PROVISION: compensation failed attempt=%s identity=%s (rows may remain: profile=%s %s=%s)",
            attempt.id,
            attempt.identity_id,
            attempt.profile_id,
            kind.key,
            attempt.role_record_id,
        )
        report.deleted.clear()
        report.error = CompensationFailed(
            "Cleanup after the failed attempt did not complete.",
            step=State.COMPENSATE.value,
            entity="profile",
            detail=str(e),
        )
        return report

    logger.info("PROVISION: attempt=%s compensated deleted=%s", attempt.id, report.deleted)
    return report
