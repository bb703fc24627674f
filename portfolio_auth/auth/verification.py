# portfolio_auth/auth/verification.py
"""
Email verification: issue a single-use token, mail the link, consume it.

Only the sha256 of the token is stored. Consumption is one conditional UPDATE
keyed on the stored hash and expiry, so a replayed or raced token matches
zero rows.
"""
from datetime import timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from portfolio_auth.auth.utils import (
    FlowResult,
    as_utc,
    hash_token,
    is_expired,
    issue_single_use_token,
    safe_compare_tokens,
    utcnow,
)
from portfolio_auth.config import settings
from portfolio_auth.logging import get_logger
from portfolio_auth.mail import Mailer, deliver_email, verification_email
from portfolio_auth.models import User
from portfolio_auth.rate_limit import RateLimitBucket, check_rate_limit
from portfolio_auth.security_log import SecurityEventType, log_security_event

logger = get_logger(__name__)

RESEND_MESSAGE = "If an unverified account exists for that email, a verification link has been sent."
INVALID_MESSAGE = "Invalid or expired verification link."
VERIFIED_MESSAGE = "Your email address has been verified."


def send_email_verification(user: User, db: Session, mailer: Mailer, *, ip: Optional[str] = None) -> bool:
    """Issue a fresh token (replacing any previous one) and mail it.

    A rate-limited request is logged and reported as sent.
    """
    limit = check_rate_limit(RateLimitBucket.EMAIL, user.email, db)
    if not limit.allowed:
        log_security_event(
            SecurityEventType.RATE_LIMIT_HIT,
            user_id=user.id,
            email=user.email,
            ip=ip,
            details={"bucket": RateLimitBucket.EMAIL, "action": "email_verification"},
        )
        return True

    raw, digest, expiry = issue_single_use_token(settings.EMAIL_VERIFICATION_EXPIRE_MINUTES)
    try:
        user.email_verification_token = digest
        user.email_verification_expiry = expiry
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log_security_event(
            SecurityEventType.EMAIL_VERIFICATION_FAIL,
            user_id=user.id,
            email=user.email,
            details={"reason": "issue_failed"},
        )
        return False

    log_security_event(
        SecurityEventType.EMAIL_VERIFICATION_ISSUED,
        user_id=user.id,
        email=user.email,
        ip=ip,
        details={"expires_at": expiry.isoformat()},
    )
    message = verification_email(user.name, raw, settings.EMAIL_VERIFICATION_EXPIRE_MINUTES)
    return deliver_email(mailer, user.email, message, user_id=user.id, kind="email_verification")


def resend_email_verification(email: str, db: Session, mailer: Mailer, *, ip: Optional[str] = None) -> FlowResult:
    """Same answer whether or not the account exists."""
    user = db.query(User).filter(func.lower(User.email) == email.strip().lower()).first()
    if user is None:
        log_security_event(
            SecurityEventType.EMAIL_VERIFICATION_RESEND, email=email, ip=ip, details={"result": "unknown_email"}
        )
        return FlowResult(True, RESEND_MESSAGE)

    if user.email_verified:
        log_security_event(
            SecurityEventType.EMAIL_VERIFICATION_RESEND,
            user_id=user.id,
            email=user.email,
            ip=ip,
            details={"result": "already_verified"},
        )
        return FlowResult(True, RESEND_MESSAGE)

    if _within_resend_cooldown(user):
        log_security_event(
            SecurityEventType.EMAIL_VERIFICATION_RESEND,
            user_id=user.id,
            email=user.email,
            ip=ip,
            details={"result": "cooldown"},
        )
        return FlowResult(True, RESEND_MESSAGE)

    log_security_event(
        SecurityEventType.EMAIL_VERIFICATION_RESEND, user_id=user.id, email=user.email, ip=ip, details={"result": "sent"}
    )
    send_email_verification(user, db, mailer, ip=ip)
    return FlowResult(True, RESEND_MESSAGE)


def _within_resend_cooldown(user: User) -> bool:
    expiry = as_utc(user.email_verification_expiry)
    if not user.email_verification_token or expiry is None:
        return False
    issued_at = expiry - timedelta(minutes=settings.EMAIL_VERIFICATION_EXPIRE_MINUTES)
    return (utcnow() - issued_at).total_seconds() < settings.VERIFICATION_RESEND_COOLDOWN_SECONDS


def verify_email_token(raw_token: Optional[str], db: Session) -> FlowResult:
    if not raw_token:
        return FlowResult(False, INVALID_MESSAGE)

    digest = hash_token(raw_token)
    try:
        user = db.query(User).filter(User.email_verification_token == digest).first()
        if user is None or not safe_compare_tokens(user.email_verification_token, digest):
            log_security_event(SecurityEventType.EMAIL_VERIFICATION_FAIL, details={"reason": "unknown_token"})
            return FlowResult(False, INVALID_MESSAGE)

        if user.email_verified:
            return FlowResult(True, VERIFIED_MESSAGE)

        now = utcnow()
        if is_expired(user.email_verification_expiry, now):
            log_security_event(
                SecurityEventType.EMAIL_VERIFICATION_FAIL,
                user_id=user.id,
                email=user.email,
                details={"reason": "expired"},
            )
            return FlowResult(False, INVALID_MESSAGE)

        consumed = (
            db.query(User)
            .filter(
                User.id == user.id,
                User.email_verification_token == digest,
                User.email_verification_expiry > now,
            )
            .update(
                {
                    User.email_verified: True,
                    User.email_verification_token: None,
                    User.email_verification_expiry: None,
                },
                synchronize_session="fetch",
            )
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.error("email_verification_failed")
        return FlowResult(False, "Unable to verify your email right now. Please try again.")

    if consumed == 0:
        log_security_event(
            SecurityEventType.EMAIL_VERIFICATION_FAIL, user_id=user.id, email=user.email, details={"reason": "replayed"}
        )
        return FlowResult(False, INVALID_MESSAGE)

    log_security_event(SecurityEventType.EMAIL_VERIFICATION_SUCCESS, user_id=user.id, email=user.email)
    return FlowResult(True, VERIFIED_MESSAGE)
