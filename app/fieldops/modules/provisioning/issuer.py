from __future__ import annotations

import logging
import re

from app.fieldops.auth_client import AuthApiError, AuthRetryableError
from app.fieldops.modules.provisioning.attempt import ProvisioningAttempt, State
from app.fieldops.modules.provisioning.context import IsolatedContext
from app.fieldops.modules.provisioning.errors import (
    AlreadyExists,
    InvalidCredential,
    NoIdentityReturned,
    Rejected,
    TransportFailure,
)

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")

_ALREADY_EXISTS_CODES = frozenset({"user_already_exists", "email_exists"})
_WEAK_PASSWORD_CODES = frozenset({"weak_password", "same_password"})

STEP = State.ISSUE_CREDENTIAL.value


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email or ""))


def check_credential_policy(password: str, *, min_length: int) -> None:
    if not password:
        raise InvalidCredential("Password is required.", step=STEP, entity="identity")
    if len(password) < min_length:
        raise InvalidCredential(
            f"Password must be at least {min_length} characters.", step=STEP, entity="identity"
        )


def _classify_api_error(e: AuthApiError) -> Exception:
    text = (e.message or "").lower()
    if e.error_code in _ALREADY_EXISTS_CODES or "already registered" in text or "already been registered" in text:
        return AlreadyExists("An account with this email is already registered.", step=STEP, entity="identity", detail=e.message)
    if e.error_code in _WEAK_PASSWORD_CODES or "password" in text:
        return InvalidCredential(
            f"The password was rejected: {e.message}", step=STEP, entity="identity", detail=e.message
        )
    if e.error_code == "email_address_invalid" or "validate email" in text:
        return Rejected(
            f"The email address was rejected: {e.message}", step=STEP, entity="identity", detail=e.message
        )
    return TransportFailure(
        f"The authentication service refused the request: {e.message}", step=STEP, entity="identity", detail=e.message
    )


def issue_credential(ctx: IsolatedContext, attempt: ProvisioningAttempt, email: str, password: str) -> str:
    """
    Register `email` with the authentication service through `ctx` and return the new
    identity id. At most one identity is issued per attempt.
    """
    if attempt.identity_id is not None:
        raise RuntimeError(f"Attempt {attempt.id} already issued identity {attempt.identity_id}")

    email = (email or "").strip().lower()
    if not email:
        raise Rejected("Email is required.", step=STEP, entity="identity")
    if not is_valid_email(email):
        raise Rejected("Invalid email format.", step=STEP, entity="identity")
    check_credential_policy(password, min_length=ctx.client.settings.password_min_length)

    try:
        payload = ctx.client.sign_up(email, password)
    except AuthApiError as e:
        logger.info("PROVISION: sign-up rejected email=%s status=%s code=%s", email, e.status, e.error_code)
        raise _classify_api_error(e) from e
    except AuthRetryableError as e:
        logger.warning("PROVISION: sign-up transport failure email=%s: %s", email, e)
        raise TransportFailure(
            "The authentication service could not be reached. Please try again.",
            step=STEP,
            entity="identity",
            detail=str(e),
        ) from e

    user = payload.get("user") if isinstance(payload.get("user"), dict) else payload
    identity_id = str(user.get("id") or "").strip() if isinstance(user, dict) else ""
    if not identity_id:
        logger.error("PROVISION: sign-up for %s succeeded without an identity id", email)
        raise NoIdentityReturned("User auth account could not be created.", step=STEP, entity="identity")

    # With email confirmation on, an existing address comes back as a decoy user with no identities.
    if user.get("identities") == []:
        raise AlreadyExists("An account with this email is already registered.", step=STEP, entity="identity")

    attempt.identity_id = identity_id
    logger.info("PROVISION: attempt=%s issued identity=%s for %s", attempt.id, identity_id, email)
    return identity_id
