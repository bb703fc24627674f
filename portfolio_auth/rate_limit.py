# portfolio_auth/rate_limit.py
"""
Sliding-window rate limiter backed by the rate_limit_hits table, so limits
hold across worker processes and restarts.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from portfolio_auth.auth.utils import utcnow
from portfolio_auth.config import settings
from portfolio_auth.logging import get_logger
from portfolio_auth.models import RateLimitHit

logger = get_logger(__name__)


class RateLimitBucket(str, Enum):
    LOGIN = "login"
    REGISTER = "register"
    EMAIL = "email"


# when the store is unreachable these buckets deny instead of allow
FAIL_CLOSED_BUCKETS = frozenset({RateLimitBucket.LOGIN, RateLimitBucket.EMAIL})


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    limit: int
    reset_at: datetime


def bucket_config(bucket: RateLimitBucket) -> tuple[int, int]:
    """Returns (limit, window_seconds)."""
    if bucket is RateLimitBucket.LOGIN:
        return settings.LOGIN_RATE_LIMIT, settings.LOGIN_RATE_WINDOW_SECONDS
    if bucket is RateLimitBucket.REGISTER:
        return settings.REGISTER_RATE_LIMIT, settings.REGISTER_RATE_WINDOW_SECONDS
    return settings.EMAIL_RATE_LIMIT, settings.EMAIL_RATE_WINDOW_SECONDS


def check_rate_limit(bucket: RateLimitBucket, identifier: str, db: Session) -> RateLimitResult:
    """Count this request against (bucket, identifier) and report whether it may proceed."""
    limit, window = bucket_config(bucket)
    now = utcnow()
    window_start = now - timedelta(seconds=window)
    reset_at = now + timedelta(seconds=window)
    identifier = identifier.lower()

    try:
        db.query(RateLimitHit).filter(
            RateLimitHit.bucket == bucket.value,
            RateLimitHit.identifier == identifier,
            RateLimitHit.created_at <= window_start,
        ).delete(synchronize_session=False)

        current = (
            db.query(RateLimitHit)
            .filter(RateLimitHit.bucket == bucket.value, RateLimitHit.identifier == identifier)
            .count()
        )
        if current >= limit:
            db.commit()
            return RateLimitResult(allowed=False, remaining=0, limit=limit, reset_at=reset_at)

        db.add(RateLimitHit(bucket=bucket.value, identifier=identifier, created_at=now))
        db.commit()
        return RateLimitResult(allowed=True, remaining=max(0, limit - current - 1), limit=limit, reset_at=reset_at)
    except SQLAlchemyError:
        db.rollback()
        logger.error("rate_limit_store_error", bucket=bucket.value)
        allowed = bucket not in FAIL_CLOSED_BUCKETS
        return RateLimitResult(
            allowed=allowed, remaining=limit - 1 if allowed else 0, limit=limit, reset_at=reset_at
        )


def reset_rate_limit(bucket: RateLimitBucket, identifier: str, db: Session) -> None:
    db.query(RateLimitHit).filter(
        RateLimitHit.bucket == bucket.value,
        RateLimitHit.identifier == identifier.lower(),
    ).delete(synchronize_session=False)
    db.commit()
