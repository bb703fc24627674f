# portfolio_auth/auth/accounts.py
"""
Account lifecycle: deactivate, reactivate, delete (anonymise) and status.

Every destructive action re-checks the password and signs out every device.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from portfolio_auth.auth.sessions import list_active_sessions, revoke_all_sessions_for_user
from portfolio_auth.auth.utils import as_utc, burn_password_check, utcnow, verify_password
from portfolio_auth.errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from portfolio_auth.mail import Mailer, send_security_notification
from portfolio_auth.models import User
from portfolio_auth.security_log import SecurityEventType, log_security_event

DELETE_CONFIRMATION_TEXT = "DELETE MY ACCOUNT"
DELETED_PASSWORD_MARKER = "deleted_account"
MAX_REASON_LENGTH = 500


@dataclass
class AccountStatus:
    id: int
    email: str
    name: str
    is_active: bool
    email_verified: bool
    deactivated_at: Optional[datetime]
    deactivation_reason: Optional[str]
    last_login_at: Optional[datetime]
    password_changed_at: Optional[datetime]
    created_at: Optional[datetime]
    active_sessions: int


def _get_active_user(user_id: int, db: Session) -> User:
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise NotFoundError("Account not found.")
    return user


def deactivate_account(
    user_id: int,
    password: str,
    db: Session,
    mailer: Mailer,
    *,
    reason: Optional[str] = None,
    ip: Optional[str] = None,
) -> int:
    """Soft-disable the account. Returns the number of sessions signed out."""
    user = _get_active_user(user_id, db)
    if not verify_password(password, user.password):
        log_security_event(
            SecurityEventType.ACCOUNT_DEACTIVATION_FAIL,
            user_id=user.id,
            email=user.email,
            ip=ip,
            details={"reason": "invalid_password"},
        )
        raise ValidationError("Invalid password.")

    try:
        user.is_active = False
        user.deactivated_at = utcnow()
        user.deactivation_reason = reason[:MAX_REASON_LENGTH] if reason else None
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log_security_event(
            SecurityEventType.ACCOUNT_DEACTIVATION_FAIL,
            user_id=user.id,
            email=user.email,
            details={"reason": "system_error"},
        )
        raise

    revoked = revoke_all_sessions_for_user(user.id, db, reason="account_deactivated")
    log_security_event(
        SecurityEventType.ACCOUNT_DEACTIVATED,
        user_id=user.id,
        email=user.email,
        ip=ip,
        details={"reason": reason or "user_request", "sessions_revoked": revoked},
    )
    suffix = f" for the following reason: {reason}" if reason else ""
    send_security_notification(
        mailer,
        user.id,
        user.email,
        user.name,
        "Account Deactivated",
        f"Your account has been deactivated{suffix}. You can reactivate it at any time with your password.",
    )
    return revoked


def reactivate_account(email: str, password: str, db: Session, mailer: Mailer, *, ip: Optional[str] = None) -> User:
    """Deactivated users hold no session, so this authenticates by email and password."""
    user = db.query(User).filter(func.lower(User.email) == email.strip().lower()).first()
    if user is None:
        burn_password_check(password)
        log_security_event(
            SecurityEventType.ACCOUNT_REACTIVATION_FAIL, email=email, ip=ip, details={"reason": "unknown_email"}
        )
        raise AuthenticationError("Invalid email or password.")

    if not verify_password(password, user.password):
        log_security_event(
            SecurityEventType.ACCOUNT_REACTIVATION_FAIL,
            user_id=user.id,
            email=user.email,
            ip=ip,
            details={"reason": "invalid_password"},
        )
        raise AuthenticationError("Invalid email or password.")

    if user.is_active:
        raise ConflictError("Account is already active.")

    try:
        user.is_active = True
        user.deactivated_at = None
        user.deactivation_reason = None
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log_security_event(
            SecurityEventType.ACCOUNT_REACTIVATION_FAIL,
            user_id=user.id,
            email=user.email,
            details={"reason": "system_error"},
        )
        raise

    log_security_event(
        SecurityEventType.ACCOUNT_REACTIVATED,
        user_id=user.id,
        email=user.email,
        ip=ip,
        details={"method": "password_reactivation"},
    )
    send_security_notification(
        mailer,
        user.id,
        user.email,
        user.name,
        "Account Reactivated",
        "Your account has been successfully reactivated. Welcome back!",
    )
    return user


def delete_account(
    user_id: int,
    password: str,
    confirmation_text: str,
    db: Session,
    mailer: Mailer,
    *,
    ip: Optional[str] = None,
) -> None:
    """
    Users are never hard-deleted: the row is anonymised and deactivated so
    security history keeps pointing at a real id.
    """
    if confirmation_text != DELETE_CONFIRMATION_TEXT:
        raise ValidationError(f'Please type "{DELETE_CONFIRMATION_TEXT}" exactly to confirm deletion.')

    user = _get_active_user(user_id, db)
    if not verify_password(password, user.password):
        log_security_event(
            SecurityEventType.ACCOUNT_DELETION_FAIL,
            user_id=user.id,
            email=user.email,
            ip=ip,
            details={"reason": "invalid_password"},
        )
        raise ValidationError("Invalid password.")

    revoke_all_sessions_for_user(user.id, db, reason="account_deleted")

    original_email, original_name = user.email, user.name
    now = utcnow()
    anonymized_email = f"deleted_{user.id}_{int(now.timestamp())}@deleted.local"
    try:
        user.email = anonymized_email
        user.name = f"Deleted User {user.id}"
        user.password = DELETED_PASSWORD_MARKER
        user.is_active = False
        user.email_verified = False
        user.deactivated_at = now
        user.deactivation_reason = "Account deleted by user request"
        user.email_verification_token = None
        user.email_verification_expiry = None
        user.password_reset_token = None
        user.password_reset_expiry = None
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log_security_event(
            SecurityEventType.ACCOUNT_DELETION_FAIL,
            user_id=user_id,
            email=original_email,
            details={"reason": "system_error"},
        )
        raise

    log_security_event(
        SecurityEventType.ACCOUNT_DELETED,
        user_id=user_id,
        email=original_email,
        ip=ip,
        details={"anonymized_email": anonymized_email},
    )
    send_security_notification(
        mailer,
        user_id,
        original_email,
        original_name,
        "Account Deleted",
        "Your account has been permanently deleted as requested. This action cannot be undone. "
        "If you did not request this deletion, please contact support immediately.",
    )


def get_account_status(user_id: int, db: Session) -> Optional[AccountStatus]:
    user = db.get(User, user_id)
    if user is None:
        return None
    return AccountStatus(
        id=user.id,
        email=user.email,
        name=user.name,
        is_active=user.is_active,
        email_verified=user.email_verified,
        deactivated_at=as_utc(user.deactivated_at),
        deactivation_reason=user.deactivation_reason,
        last_login_at=as_utc(user.last_login_at),
        password_changed_at=as_utc(user.password_changed_at),
        created_at=as_utc(user.created_at),
        active_sessions=len(list_active_sessions(user.id, db)),
    )
