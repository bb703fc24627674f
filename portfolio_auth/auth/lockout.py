# portfolio_auth/auth/lockout.py
"""
Per-account lockout after repeated wrong passwords.

States are OK (attempts below the maximum) and LOCKED (lock timer running).
An expired lock is cleared lazily by the next status check. Checking and
recording are separate calls: callers check before verifying the password
and only record a failure for a verified wrong password on a real account.

Errors fail OPEN here: a storage outage must not lock people out.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from portfolio_auth.auth.utils import as_utc, utcnow
from portfolio_auth.config import settings
from portfolio_auth.logging import get_logger
from portfolio_auth.models import User
from portfolio_auth.security_log import SecurityEventType, log_security_event

logger = get_logger(__name__)


@dataclass
class LockStatus:
    is_locked: bool
    attempts_remaining: int
    lockout_expiry: Optional[datetime] = None

    @classmethod
    def unlocked(cls) -> "LockStatus":
        return cls(is_locked=False, attempts_remaining=settings.MAX_FAILED_ATTEMPTS)


def check_account_lock_status(user_id: int, db: Session) -> LockStatus:
    try:
        user = db.get(User, user_id)
        if user is None:
            return LockStatus.unlocked()

        now = utcnow()
        locked_until = as_utc(user.account_locked_until)
        if locked_until and locked_until > now:
            return LockStatus(is_locked=True, attempts_remaining=0, lockout_expiry=locked_until)

        if locked_until:
            # lock window has passed
            _clear_lockout(user)
            db.commit()
            return LockStatus.unlocked()

        remaining = max(0, settings.MAX_FAILED_ATTEMPTS - (user.failed_login_attempts or 0))
        return LockStatus(is_locked=False, attempts_remaining=remaining)
    except SQLAlchemyError:
        db.rollback()
        logger.error("lock_status_check_failed", user_id=user_id)
        return LockStatus.unlocked()


def record_failed_login_attempt(user_id: int, email: str, db: Session) -> LockStatus:
    try:
        # increment in SQL so concurrent failures are all counted
        updated = (
            db.query(User)
            .filter(User.id == user_id)
            .update(
                {User.failed_login_attempts: func.coalesce(User.failed_login_attempts, 0) + 1},
                synchronize_session=False,
            )
        )
        if not updated:
            db.rollback()
            return LockStatus.unlocked()

        user = db.get(User, user_id, populate_existing=True)
        attempts = user.failed_login_attempts

        if attempts >= settings.MAX_FAILED_ATTEMPTS:
            lockout_expiry = utcnow() + timedelta(minutes=settings.LOCKOUT_DURATION_MINUTES)
            user.account_locked_until = lockout_expiry
            db.commit()
            log_security_event(
                SecurityEventType.ACCOUNT_LOCKED,
                user_id=user_id,
                email=email,
                details={
                    "attempts": attempts,
                    "lockout_until": lockout_expiry.isoformat(),
                },
            )
            return LockStatus(is_locked=True, attempts_remaining=0, lockout_expiry=lockout_expiry)

        db.commit()
        return LockStatus(is_locked=False, attempts_remaining=settings.MAX_FAILED_ATTEMPTS - attempts)
    except SQLAlchemyError:
        db.rollback()
        logger.error("record_failed_attempt_failed", user_id=user_id)
        return LockStatus(is_locked=False, attempts_remaining=0)


def reset_failed_attempts(user_id: int, db: Session) -> None:
    _update_user(user_id, db, "reset_failed_attempts")


def record_successful_login(user_id: int, db: Session) -> None:
    _update_user(user_id, db, "record_successful_login", last_login_at=utcnow())


def record_password_change(user_id: int, db: Session) -> None:
    # a password change proves ownership, so it also lifts any lock
    _update_user(user_id, db, "record_password_change", password_changed_at=utcnow())


def _clear_lockout(user: User) -> None:
    user.failed_login_attempts = 0
    user.account_locked_until = None


def _update_user(user_id: int, db: Session, action: str, **fields) -> None:
    try:
        user = db.get(User, user_id)
        if user is None:
            return
        _clear_lockout(user)
        for name, value in fields.items():
            setattr(user, name, value)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.error("lockout_update_failed", action=action, user_id=user_id)
