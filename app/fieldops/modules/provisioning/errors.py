from __future__ import annotations

from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError


class ProvisioningError(RuntimeError):
    """
    Terminal failure of a provisioning or edit attempt.

    `code` is stable (safe to branch on), `step` names the state that failed and
    `entity` the record involved ("identity", "profile", "seller", ...). `message` is
    the single user-facing string the form shows.
    """

    code = "provisioning_error"
    http_status = 500

    def __init__(self, message: str, *, step: str | None = None, entity: str | None = None, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.step = step
        self.entity = entity
        self.detail = detail
        # Set when the compensator also failed while cleaning up after this error.
        self.compensation_error: CompensationFailed | None = None

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "step": self.step,
            "entity": self.entity,
        }


class AlreadyExists(ProvisioningError):
    code = "already_exists"
    http_status = 409


class InvalidCredential(ProvisioningError):
    code = "invalid_credential"
    http_status = 422


class DuplicateUnique(ProvisioningError):
    code = "duplicate_unique"
    http_status = 409


class Rejected(ProvisioningError):
    code = "rejected"
    http_status = 422


class TransportFailure(ProvisioningError):
    code = "transport_failure"
    http_status = 502


class NoIdentityReturned(ProvisioningError):
    code = "no_identity_returned"
    http_status = 502


class CompensationFailed(ProvisioningError):
    """Logged and attached to the original error; never raised to callers."""

    code = "compensation_failed"


def _is_unique_violation(exc: IntegrityError) -> bool:
    text = str(getattr(exc, "orig", exc)).lower()
    return "unique" in text or "duplicate key" in text


def classify_db_error(
    exc: SQLAlchemyError,
    *,
    step: str,
    entity: str,
    unique_message: str,
    rejected_message: str,
) -> ProvisioningError:
    """Map a SQLAlchemy failure from a single write onto the taxonomy."""
    if isinstance(exc, IntegrityError):
        if _is_unique_violation(exc):
            return DuplicateUnique(unique_message, step=step, entity=entity, detail=str(exc.orig))
        return Rejected(rejected_message, step=step, entity=entity, detail=str(exc.orig))
    if isinstance(exc, DBAPIError) and not exc.connection_invalidated and _looks_like_constraint(exc):
        return Rejected(rejected_message, step=step, entity=entity, detail=str(exc.orig))
    return TransportFailure(
        "The database could not be reached. Please try again.",
        step=step,
        entity=entity,
        detail=str(exc),
    )


def _looks_like_constraint(exc: DBAPIError) -> bool:
    text = str(getattr(exc, "orig", exc)).lower()
    return "constraint" in text or "violates" in text
