# portfolio_auth/auth/services.py
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from portfolio_auth.auth.lockout import (
    check_account_lock_status,
    record_failed_login_attempt,
    record_successful_login,
)
from portfolio_auth.auth.passwords import validate_password_strength
from portfolio_auth.auth.sessions import create_session
from portfolio_auth.auth.utils import burn_password_check, extract_client_context, hash_password, utcnow, verify_password
from portfolio_auth.auth.verification import send_email_verification
from portfolio_auth.config import settings
from portfolio_auth.errors import AuthenticationError, ConflictError, RateLimitExceededError, ValidationError
from portfolio_auth.mail import Mailer
from portfolio_auth.models import User, UserSession
from portfolio_auth.rate_limit import RateLimitBucket, check_rate_limit
from portfolio_auth.security_log import SecurityEventType, log_security_event

INVALID_CREDENTIALS = "Invalid email or password."


@dataclass
class LoginResult:
    user: User
    raw_session_id: str
    session: UserSession


def _enforce_rate_limit(bucket: RateLimitBucket, ip: Optional[str], db: Session, email: Optional[str] = None) -> None:
    limit = check_rate_limit(bucket, ip or "unknown", db)
    if limit.allowed:
        return
    log_security_event(
        SecurityEventType.RATE_LIMIT_HIT,
        email=email,
        ip=ip,
        details={"bucket": bucket, "limit": limit.limit},
    )
    retry_after = int((limit.reset_at - utcnow()).total_seconds())
    raise RateLimitExceededError(retry_after=retry_after)


def authenticate_user(
    email: str,
    password: str,
    db: Session,
    request: Request | None = None,
    *,
    remember_me: bool = False,
) -> LoginResult:
    ip, ua = extract_client_context(request)
    _enforce_rate_limit(RateLimitBucket.LOGIN, ip, db, email=email)

    normalized = email.strip().lower()
    user = db.query(User).filter(func.lower(User.email) == normalized).first()

    # ---- user not found ----
    if not user:
        burn_password_check(password)
        log_security_event(
            SecurityEventType.LOGIN_FAIL, email=normalized, ip=ip, user_agent=ua, details={"reason": "unknown_email"}
        )
        raise AuthenticationError(INVALID_CREDENTIALS)

    # ---- deactivated ----
    if not user.is_active:
        burn_password_check(password)
        log_security_event(
            SecurityEventType.LOGIN_FAIL,
            user_id=user.id,
            email=user.email,
            ip=ip,
            user_agent=ua,
            details={"reason": "account_inactive"},
        )
        raise AuthenticationError(INVALID_CREDENTIALS)

    # ---- account locked ----
    lock = check_account_lock_status(user.id, db)
    if lock.is_locked:
        log_security_event(
            SecurityEventType.LOGIN_FAIL,
            user_id=user.id,
            email=user.email,
            ip=ip,
            user_agent=ua,
            details={"reason": "account_locked"},
        )
        raise AuthenticationError(INVALID_CREDENTIALS)

    # ---- password verification ----
    if not verify_password(password, user.password):
        lock = record_failed_login_attempt(user.id, user.email, db)
        log_security_event(
            SecurityEventType.LOGIN_FAIL,
            user_id=user.id,
            email=user.email,
            ip=ip,
            user_agent=ua,
            details={"reason": "invalid_password", "attempts_remaining": lock.attempts_remaining},
        )
        raise AuthenticationError(INVALID_CREDENTIALS)

    # ---- unverified email ----
    if settings.REQUIRE_EMAIL_VERIFICATION and not user.email_verified:
        log_security_event(
            SecurityEventType.LOGIN_FAIL,
            user_id=user.id,
            email=user.email,
            ip=ip,
            user_agent=ua,
            details={"reason": "email_not_verified"},
        )
        raise AuthenticationError("Please verify your email address before signing in.")

    # ---- success: reset lock/attempts ----
    record_successful_login(user.id, db)

    # ---- issue server-side session ----
    raw_session_id, session = create_session(
        user.id, db, email=user.email, remember_me=remember_me, ip_address=ip, user_agent=ua
    )
    log_security_event(
        SecurityEventType.LOGIN_SUCCESS,
        user_id=user.id,
        email=user.email,
        ip=ip,
        user_agent=ua,
        details={"remember_me": remember_me},
    )
    return LoginResult(user=user, raw_session_id=raw_session_id, session=session)


def register_user(
    email: str,
    password: str,
    name: str,
    db: Session,
    mailer: Mailer,
    request: Request | None = None,
) -> User:
    ip, ua = extract_client_context(request)
    _enforce_rate_limit(RateLimitBucket.REGISTER, ip, db, email=email)

    normalized = email.strip().lower()
    is_valid, issues = validate_password_strength(password)
    if not is_valid:
        log_security_event(
            SecurityEventType.REGISTER_FAIL, email=normalized, ip=ip, details={"reason": "weak_password"}
        )
        raise ValidationError("; ".join(issues))

    if db.query(User).filter(func.lower(User.email) == normalized).first():
        log_security_event(
            SecurityEventType.REGISTER_FAIL, email=normalized, ip=ip, details={"reason": "email_taken"}
        )
        raise ConflictError("Email already registered")

    new_user = User(email=normalized, name=name.strip(), password=hash_password(password))
    try:
        db.add(new_user)
        db.commit()
    except IntegrityError:
        # lost a race with a concurrent registration
        db.rollback()
        raise ConflictError("Email already registered")
    except SQLAlchemyError:
        db.rollback()
        log_security_event(
            SecurityEventType.REGISTER_FAIL, email=normalized, ip=ip, details={"reason": "system_error"}
        )
        raise
    db.refresh(new_user)

    log_security_event(SecurityEventType.REGISTER_SUCCESS, user_id=new_user.id, email=new_user.email, ip=ip, user_agent=ua)
    send_email_verification(new_user, db, mailer, ip=ip)
    return new_user
