"""Orchestrator tests that call the provisioning service directly."""
import pytest
from sqlalchemy.exc import OperationalError

from app.fieldops.auth_client import auth_settings_from_config
from app.fieldops.db import session_scope
from app.fieldops.models import AuditEvent, Role, User
from app.fieldops.modules.field_staff.models import Seller
from app.fieldops.modules.provisioning import compensator
from app.fieldops.modules.provisioning.attempt import ProvisioningAttempt, State
from app.fieldops.modules.provisioning.context import create_isolated_context
from app.fieldops.modules.provisioning.errors import (
    AlreadyExists,
    CompensationFailed,
    DuplicateUnique,
    InvalidCredential,
    NoIdentityReturned,
    Rejected,
    TransportFailure,
)
from app.fieldops.modules.provisioning.issuer import issue_credential
from app.fieldops.modules.provisioning.kinds import MERCHANDISER, SELLER, USER
from app.fieldops.modules.provisioning.service import (
    AccountDraft,
    AccountPatch,
    provision_account,
    update_account,
    update_role_record_account,
)


@pytest.fixture()
def settings(app, auth_server):
    return auth_settings_from_config(app.config, (auth_server,))


def _draft(**overrides):
    data = {"email": "a@x.com", "display_name": "Ann Seller", "code": "S-001"}
    data.update(overrides)
    return AccountDraft(**data)


def test_create_walks_every_state(app, settings):
    with session_scope(app) as s:
        account = provision_account(s, SELLER, _draft(), "secret1", actor=None, settings=settings)
        assert account.attempt.history == [
            State.START,
            State.ISSUE_CREDENTIAL,
            State.WRITE_PROFILE,
            State.WRITE_ROLE_RECORD,
            State.DONE,
        ]
        assert account.profile.id == account.attempt.identity_id == account.role_record.user_id
        assert account.profile.created_by is None


def test_email_is_normalised(app, settings, auth_server):
    with session_scope(app) as s:
        account = provision_account(s, SELLER, _draft(email="  Ann@X.com "), "secret1", actor=None, settings=settings)
        assert account.profile.email == "ann@x.com"
    assert "ann@x.com" in auth_server.users


def test_role_default_is_seller_role(app, settings):
    with session_scope(app) as s:
        seller_role = s.query(Role).filter(Role.name == "Seller").one()
        account = provision_account(s, SELLER, _draft(), "secret1", actor=None, settings=settings)
        assert account.profile.role_id == seller_role.id


def test_explicit_seller_role_is_kept(app, settings):
    with session_scope(app) as s:
        viewer = s.query(Role).filter(Role.name == "Viewer").one()
        account = provision_account(s, SELLER, _draft(role_id=viewer.id), "secret1", actor=None, settings=settings)
        assert account.profile.role_id == viewer.id


def test_missing_merchandiser_role_is_rejected_before_sign_up(app, settings, auth_server):
    with session_scope(app) as s:
        s.query(Role).filter(Role.name == "Merchandiser").delete()
    with session_scope(app) as s:
        with pytest.raises(Rejected) as exc:
            provision_account(s, MERCHANDISER, _draft(), "secret1", actor=None, settings=settings)
    assert "Merchandiser" in exc.value.message
    assert auth_server.requests_to("/signup") == []


def test_short_password_never_reaches_auth_service(app, settings, auth_server):
    with session_scope(app) as s:
        with pytest.raises(InvalidCredential):
            provision_account(s, SELLER, _draft(), "123", actor=None, settings=settings)
    assert auth_server.requests == []


def test_weak_password_from_service(app, settings, auth_server):
    auth_server.signup_override = (422, {"error_code": "weak_password", "msg": "Password is too weak"})
    with session_scope(app) as s:
        with pytest.raises(InvalidCredential) as exc:
            provision_account(s, SELLER, _draft(), "secret1", actor=None, settings=settings)
    assert exc.value.step == "issue_credential"


def test_missing_code_is_rejected(app, settings, auth_server):
    with session_scope(app) as s:
        with pytest.raises(Rejected) as exc:
            provision_account(s, SELLER, _draft(code=None), "secret1", actor=None, settings=settings)
    assert exc.value.message == "Seller code is required."
    assert auth_server.requests == []


def test_duplicate_email_is_already_exists(app, settings):
    with session_scope(app) as s:
        provision_account(s, SELLER, _draft(), "secret1", actor=None, settings=settings)
    with session_scope(app) as s:
        with pytest.raises(AlreadyExists):
            provision_account(s, SELLER, _draft(code="S-002"), "secret1", actor=None, settings=settings)
        assert s.query(Seller).count() == 1


def test_decoy_user_without_identities_is_already_exists(app, settings, auth_server):
    # Confirm-email mode answers an existing address with a fake user.
    decoy = {"id": "3f1e4a62-0000-4000-8000-000000000001", "email": "a@x.com", "identities": []}
    auth_server.signup_override = (200, decoy)
    with session_scope(app) as s:
        with pytest.raises(AlreadyExists):
            provision_account(s, SELLER, _draft(), "secret1", actor=None, settings=settings)
        assert s.get(User, decoy["id"]) is None


def test_sign_up_without_id_is_no_identity_returned(app, settings, auth_server):
    auth_server.signup_override = (200, {})
    with session_scope(app) as s:
        with pytest.raises(NoIdentityReturned) as exc:
            provision_account(s, SELLER, _draft(), "secret1", actor=None, settings=settings)
        assert exc.value.message == "User auth account could not be created."
        assert s.query(User).count() == 1


def test_auth_outage_is_transport_failure(app, settings, auth_server):
    auth_server.signup_override = (503, {"msg": "unavailable"})
    with session_scope(app) as s:
        with pytest.raises(TransportFailure):
            provision_account(s, SELLER, _draft(), "secret1", actor=None, settings=settings)
        ev = s.query(AuditEvent).filter(AuditEvent.action == "account.create_failed").one()
        assert ev.entity_id is None


def test_isolated_context_is_discarded_with_its_session(app, settings):
    contexts = []

    def factory(st):
        ctx = create_isolated_context(st)
        contexts.append(ctx)
        return ctx

    with session_scope(app) as s:
        provision_account(s, SELLER, _draft(), "secret1", actor=None, settings=settings, context_factory=factory)
        provision_account(
            s, SELLER, _draft(email="b@x.com", code="S-002"), "secret1", actor=None, settings=settings, context_factory=factory
        )

    first, second = contexts
    assert first is not second
    assert first.storage.keys() == [] and second.storage.keys() == []
    assert first.client.persist_session is False
    assert first.client.auto_refresh_token is False


def test_issue_credential_runs_once_per_attempt(settings):
    ctx = create_isolated_context(settings)
    attempt = ProvisioningAttempt(kind=SELLER.key)
    issue_credential(ctx, attempt, "a@x.com", "secret1")
    with pytest.raises(RuntimeError):
        issue_credential(ctx, attempt, "a@x.com", "secret1")


def test_compensation_failure_keeps_original_error(app, settings, monkeypatch):
    with session_scope(app) as s:
        provision_account(s, SELLER, _draft(), "secret1", actor=None, settings=settings)

    def _broken_audit(*args, **kwargs):
        raise OperationalError("INSERT INTO audit_events", {}, Exception("disk I/O error"))

    monkeypatch.setattr(compensator, "record_event", _broken_audit)
    with session_scope(app) as s:
        with pytest.raises(DuplicateUnique) as exc:
            provision_account(s, SELLER, _draft(email="b@x.com"), "secret1", actor=None, settings=settings)
    assert isinstance(exc.value.compensation_error, CompensationFailed)
    assert exc.value.compensation_error.step == "compensate"

    with session_scope(app) as s:
        # Cleanup never completed, so the profile row is still there.
        assert s.query(User).filter(User.email == "b@x.com").count() == 1
        ev = s.query(AuditEvent).filter(AuditEvent.action == "account.create_failed").one()
        assert '"compensation_failed": true' in ev.metadata_json


def test_attempt_cannot_leave_terminal_state():
    attempt = ProvisioningAttempt(kind=USER.key)
    attempt.advance(State.DONE)
    with pytest.raises(RuntimeError):
        attempt.advance(State.ISSUE_CREDENTIAL)


def test_edit_is_idempotent(app, settings):
    with session_scope(app) as s:
        profile_id = provision_account(s, SELLER, _draft(), "secret1", actor=None, settings=settings).profile.id

    patch = AccountPatch(display_name="Ann Renamed", is_active=False, code="S-009", phone_number="555-0199")
    with session_scope(app) as s:
        update_account(s, SELLER, profile_id, patch, actor=None)
    with session_scope(app) as s:
        once = s.get(User, profile_id)
        record = s.query(Seller).filter(Seller.user_id == profile_id).one()
        state_once = (once.full_name, once.is_active, once.updated_at, record.seller_code, record.phone_number, record.updated_at)

    with session_scope(app) as s:
        account = update_account(s, SELLER, profile_id, patch, actor=None)
        assert account.attempt.state == State.DONE
    with session_scope(app) as s:
        twice = s.get(User, profile_id)
        record = s.query(Seller).filter(Seller.user_id == profile_id).one()
        state_twice = (twice.full_name, twice.is_active, twice.updated_at, record.seller_code, record.phone_number, record.updated_at)
        assert s.query(AuditEvent).filter(AuditEvent.action == "profile.update").count() == 1

    assert state_once == state_twice
    assert state_once[:2] == ("Ann Renamed", False)
    assert state_once[3:5] == ("S-009", "555-0199")


def test_edit_keeps_profile_update_when_record_update_fails(app, settings):
    with session_scope(app) as s:
        provision_account(s, SELLER, _draft(), "secret1", actor=None, settings=settings)
        second = provision_account(s, SELLER, _draft(email="b@x.com", code="S-002"), "secret1", actor=None, settings=settings)
        profile_id = second.profile.id

    with session_scope(app) as s:
        with pytest.raises(DuplicateUnique) as exc:
            update_account(s, SELLER, profile_id, AccountPatch(display_name="Bob Renamed", code="S-001"), actor=None)
        assert exc.value.step == "update_role_record"

    with session_scope(app) as s:
        assert s.get(User, profile_id).full_name == "Bob Renamed"
        assert s.query(Seller).filter(Seller.user_id == profile_id).one().seller_code == "S-002"


def test_merchandiser_edit_ignores_role_change(app, settings):
    with session_scope(app) as s:
        profile_id = provision_account(s, MERCHANDISER, _draft(), "secret1", actor=None, settings=settings).profile.id
        admin_role = s.query(Role).filter(Role.name == "Admin").one()
        merch_role_id = s.query(Role).filter(Role.name == "Merchandiser").one().id

    with session_scope(app) as s:
        update_account(s, MERCHANDISER, profile_id, AccountPatch(role_id=admin_role.id), actor=None)
    with session_scope(app) as s:
        assert s.get(User, profile_id).role_id == merch_role_id


def test_edit_unknown_profile_is_rejected(app):
    with session_scope(app) as s:
        with pytest.raises(Rejected) as exc:
            update_account(s, SELLER, "missing", AccountPatch(display_name="x"), actor=None)
    assert exc.value.message == "Account not found."


def test_orphaned_identity_is_logged(app, settings, auth_server, caplog):
    with session_scope(app) as s:
        with pytest.raises(Rejected):
            provision_account(s, USER, _draft(role_id="no-such-role"), "secret1", actor=None, settings=settings)

    orphan_id = auth_server.users["a@x.com"]["id"]
    errors = [r for r in caplog.records if r.levelname == "ERROR" and "orphaned identity" in r.getMessage()]
    assert len(errors) == 1
    assert orphan_id in errors[0].getMessage()


def test_patch_keeps_blank_name_as_a_change():
    assert AccountPatch.from_mapping({"full_name": ""}).display_name == ""
    assert AccountPatch.from_mapping({"name": " "}).display_name == ""
    assert AccountPatch.from_mapping({"is_active": "1"}).display_name is None


def test_blank_name_edit_is_rejected(app, settings):
    with session_scope(app) as s:
        profile_id = provision_account(s, SELLER, _draft(), "secret1", actor=None, settings=settings).profile.id

    with session_scope(app) as s:
        with pytest.raises(Rejected) as exc:
            update_account(s, SELLER, profile_id, AccountPatch.from_mapping({"full_name": ""}), actor=None)
    assert exc.value.step == "update_profile"
    with session_scope(app) as s:
        assert s.get(User, profile_id).full_name == "Ann Seller"


def test_unlinked_record_edit_skips_profile(app):
    with session_scope(app) as s:
        seller = Seller(seller_code="S-500", name="No Login", is_active=True)
        s.add(seller)
        s.flush()
        record_id = seller.id

    patch = AccountPatch(display_name="No Login Renamed", is_active=False, phone_number="555-0500")
    with session_scope(app) as s:
        account = update_role_record_account(s, SELLER, record_id, patch, actor=None)
        assert account.profile is None
        assert account.attempt.history == [State.START, State.UPDATE_ROLE_RECORD, State.DONE]

    with session_scope(app) as s:
        seller = s.get(Seller, record_id)
        assert (seller.name, seller.is_active, seller.phone_number, seller.seller_code) == (
            "No Login Renamed",
            False,
            "555-0500",
            "S-500",
        )
        assert s.query(AuditEvent).filter(AuditEvent.action == "seller.update").count() == 1


def test_unlinked_record_blank_name_is_rejected(app):
    with session_scope(app) as s:
        seller = Seller(seller_code="S-501", name="No Login", is_active=True)
        s.add(seller)
        s.flush()
        record_id = seller.id

    with session_scope(app) as s:
        with pytest.raises(Rejected) as exc:
            update_role_record_account(s, SELLER, record_id, AccountPatch(display_name=""), actor=None)
    assert exc.value.entity == "seller"


def test_unknown_record_is_rejected(app):
    with session_scope(app) as s:
        with pytest.raises(Rejected) as exc:
            update_role_record_account(s, MERCHANDISER, "missing", AccountPatch(code="M-1"), actor=None)
    assert exc.value.message == "Account not found."


def test_two_records_for_one_login_is_rejected(app, settings):
    with session_scope(app) as s:
        profile_id = provision_account(s, SELLER, _draft(), "secret1", actor=None, settings=settings).profile.id
        s.add(Seller(seller_code="S-777", name="Second", is_active=True, user_id=profile_id))

    with session_scope(app) as s:
        with pytest.raises(Rejected) as exc:
            update_account(s, SELLER, profile_id, AccountPatch(code="S-778"), actor=None)
    assert exc.value.step == "update_role_record"
    assert "More than one seller record" in exc.value.message
