# portfolio_auth/auth/sessions.py
"""
Server-side sessions: the single source of truth for "is this request
authenticated, and as whom".

The client only ever holds an opaque random session id in a cookie; the table
stores its sha256 so a leaked database cannot be replayed as cookies.
Validation fails CLOSED: any storage error means "not authenticated".
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from portfolio_auth.auth.utils import as_utc, generate_secure_token, hash_token, utcnow
from portfolio_auth.config import settings
from portfolio_auth.errors import SessionCreationError
from portfolio_auth.logging import get_logger
from portfolio_auth.models import User, UserSession
from portfolio_auth.security_log import SecurityEventType, log_security_event

logger = get_logger(__name__)


@dataclass
class SessionValidation:
    is_valid: bool
    user_id: Optional[int] = None
    session_id: Optional[int] = None
    expires_at: Optional[datetime] = None
    refreshed: bool = False

    @classmethod
    def invalid(cls) -> "SessionValidation":
        return cls(is_valid=False)


def session_lifetime(remember_me: bool) -> timedelta:
    if remember_me:
        return timedelta(days=settings.REMEMBER_ME_TTL_DAYS)
    return timedelta(hours=settings.SESSION_TTL_HOURS)


def active_session_filter(now: datetime):
    return (UserSession.revoked_at.is_(None), UserSession.expires_at > now)


def create_session(
    user_id: int,
    db: Session,
    *,
    email: Optional[str] = None,
    remember_me: bool = False,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> tuple[str, UserSession]:
    """Returns (raw session id for the cookie, stored row)."""
    raw_session_id = generate_secure_token(32)
    now = utcnow()
    lifetime = session_lifetime(remember_me)
    row = UserSession(
        token_hash=hash_token(raw_session_id),
        user_id=user_id,
        is_remember_me=remember_me,
        ip_address=ip_address[:45] if ip_address else None,
        user_agent=user_agent[:500] if user_agent else None,
        created_at=now,
        last_used_at=now,
        expires_at=now + lifetime,
    )
    try:
        db.add(row)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        log_security_event(
            SecurityEventType.SESSION_CREATE_FAIL,
            user_id=user_id,
            email=email,
            details={"error": "system_error"},
        )
        raise SessionCreationError("Unable to sign in right now. Please try again.") from exc

    log_security_event(
        SecurityEventType.SESSION_CREATED,
        user_id=user_id,
        email=email,
        ip=ip_address,
        user_agent=user_agent,
        details={"remember_me": remember_me, "lifetime_hours": int(lifetime.total_seconds() // 3600)},
    )
    return raw_session_id, row


def validate_session(raw_session_id: Optional[str], db: Session) -> SessionValidation:
    if not raw_session_id:
        return SessionValidation.invalid()

    now = utcnow()
    try:
        row = (
            db.query(UserSession)
            .join(User, User.id == UserSession.user_id)
            .filter(UserSession.token_hash == hash_token(raw_session_id), User.is_active.is_(True))
            .first()
        )
    except SQLAlchemyError:
        db.rollback()
        logger.error("session_lookup_failed")
        return SessionValidation.invalid()

    if row is None or row.revoked_at is not None:
        return SessionValidation.invalid()
    expires_at = as_utc(row.expires_at)
    if expires_at <= now:
        return SessionValidation.invalid()

    result = SessionValidation(is_valid=True, user_id=row.user_id, session_id=row.id, expires_at=expires_at)
    _maybe_refresh(row, result, now, db)
    return result


def _maybe_refresh(row: UserSession, result: SessionValidation, now: datetime, db: Session) -> None:
    """Slide the expiry once less than the threshold fraction of the lifetime is left.

    Best effort: a failed write is logged and the session stays valid.
    """
    lifetime = session_lifetime(row.is_remember_me)
    remaining = result.expires_at - now
    slide = remaining < lifetime * settings.SESSION_REFRESH_THRESHOLD
    touch = now - as_utc(row.last_used_at) > timedelta(seconds=settings.SESSION_TOUCH_INTERVAL_SECONDS)
    if not (slide or touch):
        return

    try:
        if slide:
            row.expires_at = now + lifetime
        row.last_used_at = now
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log_security_event(
            SecurityEventType.SESSION_REFRESH_FAIL,
            user_id=row.user_id,
            details={"session_id": row.id},
        )
        return

    if slide:
        result.expires_at = as_utc(row.expires_at)
        result.refreshed = True


def revoke_session(raw_session_id: str, db: Session, reason: str = "user_logout") -> Optional[UserSession]:
    """Idempotent. Returns the session row, or None when no such session exists."""
    row = db.query(UserSession).filter(UserSession.token_hash == hash_token(raw_session_id)).first()
    if row is None:
        return None
    if row.revoked_at is not None:
        return row

    row.revoked_at = utcnow()
    row.revoke_reason = reason
    db.commit()
    log_security_event(SecurityEventType.SESSION_REVOKED, user_id=row.user_id, details={"reason": reason})
    return row


def revoke_user_session(user_id: int, session_id: int, db: Session, reason: str = "user_revoked") -> bool:
    """Revoke one of a user's own sessions by its listing id."""
    row = db.query(UserSession).filter(UserSession.id == session_id, UserSession.user_id == user_id).first()
    if row is None:
        return False
    if row.revoked_at is None:
        row.revoked_at = utcnow()
        row.revoke_reason = reason
        db.commit()
        log_security_event(SecurityEventType.SESSION_REVOKED, user_id=user_id, details={"reason": reason})
    return True


def revoke_all_sessions_for_user(
    user_id: int,
    db: Session,
    except_session_id: Optional[int] = None,
    reason: str = "security_action",
    *,
    commit: bool = True,
) -> int:
    """Revoke every live session of the user in one statement, optionally keeping one.

    With commit=False the UPDATE joins the caller's transaction; the caller
    commits and then calls log_sessions_revoked.
    """
    query = db.query(UserSession).filter(UserSession.user_id == user_id, UserSession.revoked_at.is_(None))
    if except_session_id is not None:
        query = query.filter(UserSession.id != except_session_id)
    count = query.update(
        {UserSession.revoked_at: utcnow(), UserSession.revoke_reason: reason},
        synchronize_session="fetch",
    )
    if commit:
        db.commit()
        log_sessions_revoked(user_id, count, reason, except_session_id)
    return count


def log_sessions_revoked(user_id: int, count: int, reason: str, except_session_id: Optional[int] = None) -> None:
    log_security_event(
        SecurityEventType.ALL_SESSIONS_REVOKED,
        user_id=user_id,
        details={"reason": reason, "except_current": except_session_id is not None, "count": count},
    )


def list_active_sessions(user_id: int, db: Session) -> list[UserSession]:
    now = utcnow()
    return (
        db.query(UserSession)
        .filter(UserSession.user_id == user_id, *active_session_filter(now))
        .order_by(UserSession.last_used_at.desc())
        .all()
    )


def cleanup_expired_sessions(db: Session) -> int:
    """Delete expired rows. Raises on storage errors so maintenance can report them."""
    try:
        count = (
            db.query(UserSession)
            .filter(UserSession.expires_at <= utcnow())
            .delete(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.error("session_cleanup_failed")
        raise
    logger.info("expired_sessions_cleaned", count=count)
    return count


# -------- cookie contract --------
def set_session_cookie(response: Response, raw_session_id: str, expires_at: datetime) -> None:
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=raw_session_id,
        expires=as_utc(expires_at),
        path="/",
        httponly=True,
        secure=settings.SESSION_COOKIE_SECURE,
        samesite="strict",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        key=settings.SESSION_COOKIE_NAME,
        path="/",
        httponly=True,
        secure=settings.SESSION_COOKIE_SECURE,
        samesite="strict",
    )
