import pytest

from portfolio_auth.auth.accounts import (
    DELETE_CONFIRMATION_TEXT,
    deactivate_account,
    delete_account,
    get_account_status,
    reactivate_account,
)
from portfolio_auth.auth.sessions import create_session, validate_session
from portfolio_auth.errors import AuthenticationError, ConflictError, ValidationError
from portfolio_auth.models import SecurityLog, User
from tests.conftest import PASSWORD


def test_deactivate_signs_out_everywhere(db, make_user, mailer):
    user = make_user()
    raws = [create_session(user.id, db)[0] for _ in range(2)]

    revoked = deactivate_account(user.id, PASSWORD, db, mailer, reason="taking a break")

    assert revoked == 2
    db.refresh(user)
    assert not user.is_active
    assert user.deactivation_reason == "taking a break"
    assert not any(validate_session(raw, db).is_valid for raw in raws)
    assert mailer.sent[-1]["subject"] == "Security Alert: Account Deactivated"


def test_deactivate_requires_password(db, make_user, mailer):
    user = make_user()
    with pytest.raises(ValidationError):
        deactivate_account(user.id, "Wrong#Pass123", db, mailer)
    db.refresh(user)
    assert user.is_active


def test_reactivate_with_password(db, make_user, mailer):
    user = make_user()
    deactivate_account(user.id, PASSWORD, db, mailer)

    reactivate_account("ANSEL@example.com", PASSWORD, db, mailer)

    db.refresh(user)
    assert user.is_active
    assert user.deactivated_at is None
    assert db.query(SecurityLog).filter(SecurityLog.event_type == "ACCOUNT_REACTIVATED").count() == 1


def test_reactivate_rejects_wrong_password_and_unknown_email(db, make_user, mailer):
    user = make_user()
    deactivate_account(user.id, PASSWORD, db, mailer)

    with pytest.raises(AuthenticationError):
        reactivate_account(user.email, "Wrong#Pass123", db, mailer)
    with pytest.raises(AuthenticationError):
        reactivate_account("nobody@example.com", PASSWORD, db, mailer)


def test_reactivate_active_account_conflicts(db, make_user, mailer):
    user = make_user()
    with pytest.raises(ConflictError):
        reactivate_account(user.email, PASSWORD, db, mailer)


def test_delete_requires_exact_confirmation(db, make_user, mailer):
    user = make_user()
    with pytest.raises(ValidationError):
        delete_account(user.id, PASSWORD, "delete my account", db, mailer)
    db.refresh(user)
    assert user.is_active


def test_delete_anonymises_instead_of_removing(db, make_user, mailer):
    user = make_user()
    raw, _ = create_session(user.id, db)

    delete_account(user.id, PASSWORD, DELETE_CONFIRMATION_TEXT, db, mailer)

    db.refresh(user)
    assert db.query(User).count() == 1
    assert user.email.startswith(f"deleted_{user.id}_")
    assert user.email.endswith("@deleted.local")
    assert user.name == f"Deleted User {user.id}"
    assert not user.is_active
    assert not validate_session(raw, db).is_valid
    # notification goes to the address the user had
    assert mailer.sent[-1]["to"] == "ansel@example.com"

    with pytest.raises(AuthenticationError):
        reactivate_account(user.email, PASSWORD, db, mailer)


def test_account_status(db, make_user):
    user = make_user()
    create_session(user.id, db)
    create_session(user.id, db)

    status = get_account_status(user.id, db)

    assert status.email == user.email
    assert status.is_active
    assert status.active_sessions == 2
    assert get_account_status(999, db) is None
