# portfolio_auth/auth/passwords.py
"""
Password reset (forgot-password link), authenticated password change, and the
password strength policy.
"""
import re
from datetime import timedelta
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from portfolio_auth.auth.sessions import log_sessions_revoked, revoke_all_sessions_for_user
from portfolio_auth.auth.utils import (
    FlowResult,
    hash_password,
    hash_token,
    is_expired,
    issue_single_use_token,
    safe_compare_tokens,
    utcnow,
    verify_password,
)
from portfolio_auth.config import settings
from portfolio_auth.errors import NotFoundError, ValidationError
from portfolio_auth.logging import get_logger
from portfolio_auth.mail import Mailer, deliver_email, password_reset_email, send_security_notification
from portfolio_auth.models import User
from portfolio_auth.rate_limit import RateLimitBucket, check_rate_limit
from portfolio_auth.security_log import SecurityEventType, log_security_event

logger = get_logger(__name__)

RESET_REQUEST_MESSAGE = "If an account with that email exists, a password reset link has been sent."
INVALID_RESET_MESSAGE = "Invalid or expired reset link."

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
_WEAK_PATTERNS = (
    re.compile(r"^(.)\1+$"),
    re.compile(
        r"^(012|123|234|345|456|567|678|789|890|abc|bcd|cde|def|efg|fgh|ghi|hij|ijk|jkl|klm|lmn|mno|nop|opq"
        r"|pqr|qrs|rst|stu|tuv|uvw|vwx|wxy|xyz)",
        re.IGNORECASE,
    ),
    re.compile(r"^(password|123456|qwerty|admin|login|welcome)", re.IGNORECASE),
)


def validate_password_strength(password: str) -> tuple[bool, list[str]]:
    issues = []
    if len(password) < MIN_PASSWORD_LENGTH:
        issues.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        issues.append(f"Password must be no more than {MAX_PASSWORD_LENGTH} characters long")
    if not re.search(r"[A-Z]", password):
        issues.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        issues.append("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        issues.append("Password must contain at least one number")
    if not _SPECIAL_RE.search(password):
        issues.append("Password must contain at least one special character")
    if any(pattern.search(password) for pattern in _WEAK_PATTERNS):
        issues.append("Password contains common weak patterns")
    return not issues, issues


# -------- forgot password --------
def send_password_reset(email: str, db: Session, mailer: Mailer, *, ip: Optional[str] = None) -> FlowResult:
    """
    Always answers the same way so the endpoint cannot be used to discover
    accounts. Unknown or inactive accounts, rate-limited callers and requests
    inside the cooldown are logged and nothing is sent.

    The cooldown check and the token write run in one transaction: the row is
    locked and the UPDATE only matches while the stored expiry is older than
    the cooldown, so concurrent requests leave exactly one token behind.
    """
    normalized = email.strip().lower()
    result = FlowResult(True, RESET_REQUEST_MESSAGE)

    limit = check_rate_limit(RateLimitBucket.EMAIL, normalized, db)
    if not limit.allowed:
        log_security_event(
            SecurityEventType.RATE_LIMIT_HIT,
            email=normalized,
            ip=ip,
            details={"bucket": RateLimitBucket.EMAIL, "action": "password_reset"},
        )
        return result

    log_security_event(SecurityEventType.PASSWORD_RESET_REQUEST, email=normalized, ip=ip)

    ttl = timedelta(minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES)
    try:
        user = (
            db.query(User)
            .filter(func.lower(User.email) == normalized)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if user is None or not user.is_active:
            db.rollback()
            log_security_event(
                SecurityEventType.PASSWORD_RESET_FAIL,
                user_id=user.id if user else None,
                email=normalized,
                ip=ip,
                details={"reason": "unknown_email" if user is None else "inactive_account"},
            )
            return result

        raw, digest, expiry = issue_single_use_token(settings.PASSWORD_RESET_EXPIRE_MINUTES)
        # a stored expiry later than this was issued inside the cooldown
        cooldown_cutoff = utcnow() + ttl - timedelta(seconds=settings.PASSWORD_RESET_COOLDOWN_SECONDS)
        issued = (
            db.query(User)
            .filter(
                User.id == user.id,
                or_(User.password_reset_expiry.is_(None), User.password_reset_expiry <= cooldown_cutoff),
            )
            .update(
                {User.password_reset_token: digest, User.password_reset_expiry: expiry},
                synchronize_session="fetch",
            )
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.error("password_reset_issue_failed")
        return result

    if issued == 0:
        log_security_event(
            SecurityEventType.PASSWORD_RESET_FAIL,
            user_id=user.id,
            email=user.email,
            ip=ip,
            details={"reason": "cooldown"},
        )
        return result

    log_security_event(
        SecurityEventType.PASSWORD_RESET_ISSUED,
        user_id=user.id,
        email=user.email,
        ip=ip,
        details={"expires_at": expiry.isoformat()},
    )
    message = password_reset_email(user.name, raw, settings.PASSWORD_RESET_EXPIRE_MINUTES)
    deliver_email(mailer, user.email, message, user_id=user.id, kind="password_reset")
    return result


def _find_reset_user(raw_token: Optional[str], db: Session) -> Optional[User]:
    if not raw_token:
        return None
    digest = hash_token(raw_token)
    user = db.query(User).filter(User.password_reset_token == digest).first()
    if user is None or not safe_compare_tokens(user.password_reset_token, digest):
        return None
    return user


def verify_password_reset_token(raw_token: Optional[str], db: Session) -> Optional[int]:
    """Read-only pre-check for the reset form; consumes nothing."""
    user = _find_reset_user(raw_token, db)
    if user is None or not user.is_active or is_expired(user.password_reset_expiry):
        return None
    return user.id


def reset_password_with_token(
    raw_token: Optional[str],
    new_password: str,
    db: Session,
    mailer: Mailer,
    *,
    ip: Optional[str] = None,
) -> FlowResult:
    is_valid, issues = validate_password_strength(new_password)
    if not is_valid:
        return FlowResult(False, "; ".join(issues))

    user = _find_reset_user(raw_token, db)
    now = utcnow()
    if user is None or not user.is_active or is_expired(user.password_reset_expiry, now):
        log_security_event(
            SecurityEventType.PASSWORD_RESET_FAIL,
            user_id=user.id if user else None,
            ip=ip,
            details={"reason": "invalid_or_expired_token"},
        )
        return FlowResult(False, INVALID_RESET_MESSAGE)

    new_hash = hash_password(new_password)
    user_id = user.id
    revoked = 0
    try:
        # consuming the token and writing the password is one statement
        consumed = (
            db.query(User)
            .filter(
                User.id == user.id,
                User.password_reset_token == user.password_reset_token,
                User.password_reset_expiry > now,
            )
            .update(
                {
                    User.password: new_hash,
                    User.password_reset_token: None,
                    User.password_reset_expiry: None,
                    User.failed_login_attempts: 0,
                    User.account_locked_until: None,
                    User.password_changed_at: now,
                },
                synchronize_session="fetch",
            )
        )
        if consumed:
            # old sessions die in the same transaction as the old password
            revoked = revoke_all_sessions_for_user(user_id, db, reason="password_reset", commit=False)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.error("password_reset_consume_failed", user_id=user_id)
        return FlowResult(False, "Unable to reset your password right now. Please try again.")

    if consumed == 0:
        log_security_event(
            SecurityEventType.PASSWORD_RESET_FAIL, user_id=user.id, email=user.email, details={"reason": "replayed"}
        )
        return FlowResult(False, INVALID_RESET_MESSAGE)

    log_sessions_revoked(user.id, revoked, "password_reset")
    log_security_event(SecurityEventType.PASSWORD_RESET_SUCCESS, user_id=user.id, email=user.email, ip=ip)
    send_security_notification(
        mailer,
        user.id,
        user.email,
        user.name,
        "Password Reset",
        "Your password was reset and every signed-in device has been signed out.",
    )
    return FlowResult(True, "Your password has been reset. Please sign in with your new password.")


# -------- authenticated change --------
def change_password(
    user_id: int,
    current_password: str,
    new_password: str,
    db: Session,
    mailer: Mailer,
    *,
    keep_session_id: Optional[int] = None,
    ip: Optional[str] = None,
) -> int:
    """Returns how many other sessions were signed out."""
    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise NotFoundError("Account not found.")

    if not verify_password(current_password, user.password):
        log_security_event(
            SecurityEventType.PASSWORD_CHANGE_FAIL,
            user_id=user.id,
            email=user.email,
            ip=ip,
            details={"reason": "wrong_current_password"},
        )
        raise ValidationError("Current password is incorrect.")

    if verify_password(new_password, user.password):
        raise ValidationError("New password must be different from the current password.")

    is_valid, issues = validate_password_strength(new_password)
    if not is_valid:
        raise ValidationError("; ".join(issues))

    email = user.email
    try:
        # a password change proves ownership, so it also lifts any lock
        user.password = hash_password(new_password)
        user.failed_login_attempts = 0
        user.account_locked_until = None
        user.password_changed_at = utcnow()
        revoked = revoke_all_sessions_for_user(
            user_id, db, except_session_id=keep_session_id, reason="password_change", commit=False
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log_security_event(
            SecurityEventType.PASSWORD_CHANGE_FAIL,
            user_id=user_id,
            email=email,
            ip=ip,
            details={"reason": "system_error"},
        )
        raise

    log_sessions_revoked(user_id, revoked, "password_change", keep_session_id)
    log_security_event(
        SecurityEventType.PASSWORD_CHANGE_SUCCESS,
        user_id=user.id,
        email=user.email,
        ip=ip,
        details={"sessions_revoked": revoked},
    )
    send_security_notification(
        mailer,
        user.id,
        user.email,
        user.name,
        "Password Changed",
        "Your password was changed and your other signed-in devices have been signed out.",
    )
    return revoked
