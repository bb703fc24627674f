from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from portfolio_auth.auth import passwords
from portfolio_auth.auth.passwords import (
    INVALID_RESET_MESSAGE,
    RESET_REQUEST_MESSAGE,
    change_password,
    reset_password_with_token,
    send_password_reset,
    validate_password_strength,
    verify_password_reset_token,
)
from portfolio_auth.auth.sessions import create_session, validate_session
from portfolio_auth.auth.utils import as_utc, hash_token, utcnow, verify_password
from portfolio_auth.auth.verification import (
    RESEND_MESSAGE,
    resend_email_verification,
    send_email_verification,
    verify_email_token,
)
from portfolio_auth.config import settings
from portfolio_auth.errors import ValidationError
from portfolio_auth.models import SecurityLog
from portfolio_auth.rate_limit import RateLimitBucket, bucket_config, check_rate_limit
from tests.conftest import NEW_PASSWORD, PASSWORD


def _events(db, event_type):
    return db.query(SecurityLog).filter(SecurityLog.event_type == event_type).all()


def _exhaust_email_bucket(db, email):
    limit, _ = bucket_config(RateLimitBucket.EMAIL)
    for _ in range(limit):
        assert check_rate_limit(RateLimitBucket.EMAIL, email, db).allowed


def _fail_revocation(*args, **kwargs):
    raise OperationalError("UPDATE user_sessions", {}, Exception("database is locked"))


# --------------------------
# Email verification
# --------------------------
def test_verification_token_is_stored_hashed(db, make_user, mailer):
    user = make_user(verified=False)
    assert send_email_verification(user, db, mailer)

    raw = mailer.last_token()
    db.refresh(user)
    assert user.email_verification_token == hash_token(raw)
    assert user.email_verification_token != raw
    expected = utcnow() + timedelta(minutes=settings.EMAIL_VERIFICATION_EXPIRE_MINUTES)
    assert abs((as_utc(user.email_verification_expiry) - expected).total_seconds()) < 5


def test_verification_token_is_single_use(db, make_user, mailer):
    user = make_user(verified=False)
    send_email_verification(user, db, mailer)
    raw = mailer.last_token()

    first = verify_email_token(raw, db)
    second = verify_email_token(raw, db)

    assert first.success
    assert not second.success
    db.refresh(user)
    assert user.email_verified
    assert user.email_verification_token is None
    assert user.email_verification_expiry is None


def test_expired_verification_token_is_rejected(db, make_user, mailer):
    user = make_user(verified=False)
    send_email_verification(user, db, mailer)
    user.email_verification_expiry = utcnow() - timedelta(seconds=1)
    db.commit()

    result = verify_email_token(mailer.last_token(), db)

    assert not result.success
    db.refresh(user)
    assert not user.email_verified


@pytest.mark.parametrize("raw", [None, "", "made-up-token"])
def test_unknown_verification_token(db, raw):
    assert not verify_email_token(raw, db).success


def test_mail_failure_keeps_token(db, make_user, mailer):
    mailer.fail = True
    user = make_user(verified=False)

    assert not send_email_verification(user, db, mailer)

    db.refresh(user)
    assert user.email_verification_token is not None
    assert len(_events(db, "EMAIL_SEND_FAIL")) == 1


def test_resend_for_unknown_email_looks_like_success(db, mailer):
    result = resend_email_verification("nobody@example.com", db, mailer)
    assert result.success
    assert result.message == RESEND_MESSAGE
    assert mailer.sent == []


def test_resend_respects_cooldown(db, make_user, mailer):
    user = make_user(verified=False)
    send_email_verification(user, db, mailer)

    result = resend_email_verification(user.email, db, mailer)

    assert result.success
    assert len(mailer.sent) == 1


def test_resend_after_cooldown_issues_new_token(db, make_user, mailer):
    user = make_user(verified=False)
    send_email_verification(user, db, mailer)
    first = mailer.last_token()
    # pretend the first token was issued before the cooldown started
    user.email_verification_expiry = utcnow() + timedelta(
        minutes=settings.EMAIL_VERIFICATION_EXPIRE_MINUTES,
        seconds=-(settings.VERIFICATION_RESEND_COOLDOWN_SECONDS + 1),
    )
    db.commit()

    resend_email_verification(user.email.upper(), db, mailer)

    assert len(mailer.sent) == 2
    assert mailer.last_token() != first
    assert not verify_email_token(first, db).success


def test_resend_for_verified_account_sends_nothing(db, make_user, mailer):
    user = make_user(verified=True)
    assert resend_email_verification(user.email, db, mailer).success
    assert mailer.sent == []


def test_rate_limited_verification_sends_nothing(db, make_user, mailer):
    user = make_user(verified=False)
    _exhaust_email_bucket(db, user.email)

    # reported as sent so callers cannot tell the difference
    assert send_email_verification(user, db, mailer)

    db.refresh(user)
    assert user.email_verification_token is None
    assert mailer.sent == []
    assert _events(db, "RATE_LIMIT_HIT")[0].details == {"bucket": "email", "action": "email_verification"}


def test_rate_limited_resend_is_success_shaped(db, make_user, mailer):
    user = make_user(verified=False)
    _exhaust_email_bucket(db, user.email)

    result = resend_email_verification(user.email, db, mailer)

    assert result.success
    assert result.message == RESEND_MESSAGE
    db.refresh(user)
    assert user.email_verification_token is None
    assert mailer.sent == []
    assert len(_events(db, "RATE_LIMIT_HIT")) == 1


# --------------------------
# Password reset
# --------------------------
def test_reset_request_for_unknown_email_looks_like_success(db, mailer):
    result = send_password_reset("nobody@example.com", db, mailer)

    assert result.success
    assert result.message == RESET_REQUEST_MESSAGE
    assert mailer.sent == []
    assert len(_events(db, "PASSWORD_RESET_FAIL")) == 1


def test_reset_request_for_inactive_account_sends_nothing(db, make_user, mailer):
    make_user(active=False)
    assert send_password_reset("ansel@example.com", db, mailer).success
    assert mailer.sent == []


def test_reset_token_issued_and_stored_hashed(db, make_user, mailer):
    user = make_user()
    send_password_reset("Ansel@Example.com", db, mailer)

    raw = mailer.last_token()
    db.refresh(user)
    assert user.password_reset_token == hash_token(raw)
    assert verify_password_reset_token(raw, db) == user.id


def test_double_reset_request_leaves_one_token(db, make_user, mailer):
    user = make_user()
    send_password_reset(user.email, db, mailer)
    db.refresh(user)
    first_hash = user.password_reset_token

    second = send_password_reset(user.email, db, mailer)

    db.refresh(user)
    assert second.success
    assert user.password_reset_token == first_hash
    assert len(mailer.sent) == 1
    assert any(e.details == {"reason": "cooldown"} for e in _events(db, "PASSWORD_RESET_FAIL"))


def test_reset_after_cooldown_replaces_token(db, make_user, mailer):
    user = make_user()
    send_password_reset(user.email, db, mailer)
    first = mailer.last_token()
    user.password_reset_expiry = utcnow() + timedelta(
        minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES,
        seconds=-(settings.PASSWORD_RESET_COOLDOWN_SECONDS + 1),
    )
    db.commit()

    send_password_reset(user.email, db, mailer)

    assert len(mailer.sent) == 2
    assert verify_password_reset_token(first, db) is None
    assert verify_password_reset_token(mailer.last_token(), db) == user.id


def test_reset_consumes_token_and_revokes_sessions(db, make_user, mailer):
    user = make_user()
    session_raw, _ = create_session(user.id, db)
    user.failed_login_attempts = 3
    db.commit()
    send_password_reset(user.email, db, mailer)
    raw = mailer.last_token()

    result = reset_password_with_token(raw, NEW_PASSWORD, db, mailer)

    assert result.success
    db.refresh(user)
    assert verify_password(NEW_PASSWORD, user.password)
    assert user.password_reset_token is None
    assert user.password_reset_expiry is None
    assert user.failed_login_attempts == 0
    assert user.password_changed_at is not None
    assert not validate_session(session_raw, db).is_valid
    assert mailer.sent[-1]["subject"] == "Security Alert: Password Reset"

    replay = reset_password_with_token(raw, "Another!Pass77", db, mailer)
    assert not replay.success
    assert replay.message == INVALID_RESET_MESSAGE


def test_rate_limited_reset_request_sends_nothing(db, make_user, mailer):
    user = make_user()
    _exhaust_email_bucket(db, user.email)

    result = send_password_reset("Ansel@Example.com", db, mailer)

    assert result.success
    assert result.message == RESET_REQUEST_MESSAGE
    db.refresh(user)
    assert user.password_reset_token is None
    assert mailer.sent == []
    assert _events(db, "RATE_LIMIT_HIT")[0].details == {"bucket": "email", "action": "password_reset"}
    assert _events(db, "PASSWORD_RESET_REQUEST") == []


def test_reset_keeps_old_password_when_revocation_fails(db, make_user, mailer, monkeypatch):
    user = make_user()
    session_raw, _ = create_session(user.id, db)
    send_password_reset(user.email, db, mailer)
    raw = mailer.last_token()
    monkeypatch.setattr(passwords, "revoke_all_sessions_for_user", _fail_revocation)

    result = reset_password_with_token(raw, NEW_PASSWORD, db, mailer)

    assert not result.success
    db.refresh(user)
    assert verify_password(PASSWORD, user.password)
    assert validate_session(session_raw, db).is_valid
    # nothing was consumed, so the emailed link still works
    assert verify_password_reset_token(raw, db) == user.id
    assert _events(db, "PASSWORD_RESET_SUCCESS") == []


def test_expired_reset_token_is_rejected(db, make_user, mailer):
    # issued at 10:00 with a 30 minute lifetime, used at 10:31
    user = make_user()
    send_password_reset(user.email, db, mailer)
    user.password_reset_expiry = utcnow() - timedelta(minutes=1)
    db.commit()

    result = reset_password_with_token(mailer.last_token(), NEW_PASSWORD, db, mailer)

    assert not result.success
    db.refresh(user)
    assert verify_password(PASSWORD, user.password)
    assert verify_password_reset_token(mailer.last_token(), db) is None


def test_reset_rejects_weak_password(db, make_user, mailer):
    user = make_user()
    send_password_reset(user.email, db, mailer)

    result = reset_password_with_token(mailer.last_token(), "short", db, mailer)

    assert not result.success
    db.refresh(user)
    assert user.password_reset_token is not None


# --------------------------
# Password change
# --------------------------
def test_change_password_keeps_only_current_session(db, make_user, mailer):
    user = make_user()
    current_raw, current = create_session(user.id, db)
    other_raw, _ = create_session(user.id, db)

    revoked = change_password(user.id, PASSWORD, NEW_PASSWORD, db, mailer, keep_session_id=current.id)

    assert revoked == 1
    assert validate_session(current_raw, db).is_valid
    assert not validate_session(other_raw, db).is_valid
    db.refresh(user)
    assert verify_password(NEW_PASSWORD, user.password)
    assert len(_events(db, "PASSWORD_CHANGE_SUCCESS")) == 1


def test_change_password_rolls_back_when_revocation_fails(db, make_user, mailer, monkeypatch):
    user = make_user()
    _, current = create_session(user.id, db)
    other_raw, _ = create_session(user.id, db)
    monkeypatch.setattr(passwords, "revoke_all_sessions_for_user", _fail_revocation)

    with pytest.raises(OperationalError):
        change_password(user.id, PASSWORD, NEW_PASSWORD, db, mailer, keep_session_id=current.id)

    db.refresh(user)
    assert verify_password(PASSWORD, user.password)
    assert validate_session(other_raw, db).is_valid
    assert _events(db, "PASSWORD_CHANGE_FAIL")[0].details == {"reason": "system_error"}
    assert _events(db, "PASSWORD_CHANGE_SUCCESS") == []
    assert mailer.sent == []


def test_change_password_requires_current(db, make_user, mailer):
    user = make_user()
    with pytest.raises(ValidationError):
        change_password(user.id, "Wrong#Pass123", NEW_PASSWORD, db, mailer)
    assert len(_events(db, "PASSWORD_CHANGE_FAIL")) == 1


def test_change_password_rejects_same_password(db, make_user, mailer):
    user = make_user()
    with pytest.raises(ValidationError):
        change_password(user.id, PASSWORD, PASSWORD, db, mailer)


# --------------------------
# Strength policy
# --------------------------
@pytest.mark.parametrize(
    "password, ok",
    [
        (PASSWORD, True),
        ("short1!", False),
        ("alllowercase1!", False),
        ("NoDigits!!", False),
        ("NoSpecial123", False),
        ("Password1!", False),
        ("aaaaaaaa", False),
        ("A" * 130 + "a1!", False),
    ],
)
def test_password_strength(password, ok):
    is_valid, issues = validate_password_strength(password)
    assert is_valid is ok
    assert bool(issues) is not ok
