# portfolio_auth/auth/csrf.py
"""
Stateless CSRF tokens: short-lived HS256 JWTs that carry no session identity
and are never stored server-side. Verification is a pure predicate and must
not raise; it sits on every mutating request.
"""
import hmac
import time
from typing import Any, Optional

import jwt

from portfolio_auth.config import settings
from portfolio_auth.logging import get_logger

logger = get_logger(__name__)

CSRF_PURPOSE = "csrf"


def generate_csrf_token() -> str:
    now = int(time.time())
    payload = {
        "purpose": CSRF_PURPOSE,
        "timestamp": int(time.time() * 1000),
        "iat": now,
        "exp": now + settings.CSRF_TOKEN_EXPIRE_SECONDS,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def verify_csrf_token(token: Any) -> bool:
    if not token or not isinstance(token, str):
        return False
    if len(token.split(".")) != 3:
        return False

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"require": ["exp", "iat"]},
        )
    except jwt.PyJWTError as exc:
        logger.warning("csrf_token_rejected", reason=type(exc).__name__)
        return False

    if payload.get("purpose") != CSRF_PURPOSE:
        return False
    timestamp = payload.get("timestamp")
    if not isinstance(timestamp, int) or isinstance(timestamp, bool):
        return False

    now_ms = int(time.time() * 1000)
    if now_ms - timestamp > settings.CSRF_TOKEN_EXPIRE_SECONDS * 1000:
        return False
    if timestamp > now_ms + settings.CSRF_CLOCK_SKEW_SECONDS * 1000:
        return False
    return True


def validate_csrf_pair(submitted: Optional[str], cookie_token: Optional[str]) -> bool:
    """Double-submit check: the header/form token must equal the cookie token and both must verify."""
    if not submitted or not cookie_token:
        return False
    # evaluate everything so timing does not reveal which check failed
    submitted_ok = verify_csrf_token(submitted)
    cookie_ok = verify_csrf_token(cookie_token)
    match = hmac.compare_digest(submitted.encode("utf-8"), cookie_token.encode("utf-8"))
    return submitted_ok and cookie_ok and match
