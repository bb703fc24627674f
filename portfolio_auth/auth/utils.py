# portfolio_auth/auth/utils.py
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Request
from passlib.context import CryptContext

# Argon2 for password hashing
pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

# verified against on unknown emails so both branches cost the same
_DUMMY_HASH = pwd_context.hash(secrets.token_urlsafe(16))


# -------- time helpers --------
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_expired(expiry: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """A missing expiry counts as expired."""
    if expiry is None:
        return True
    return (now or utcnow()) >= as_utc(expiry)


# -------- password helpers --------
def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    if not plain_password or not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # unrecognised hash, e.g. an anonymised account
        return False


def burn_password_check(plain_password: str) -> None:
    pwd_context.verify(plain_password or "x", _DUMMY_HASH)


# -------- opaque token helpers --------
def generate_secure_token(nbytes: int = 32) -> str:
    """URL-safe random token; 32 bytes gives 256 bits of entropy."""
    return secrets.token_urlsafe(nbytes)


def hash_token(token: str) -> str:
    """One-way sha256 hex digest used for every stored single-use token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def safe_compare_tokens(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# -------- request context --------
def extract_client_context(request: Optional[Request]) -> tuple[Optional[str], Optional[str]]:
    """
    Returns (ip, user_agent).
    Prefers what ClientContextMiddleware stored on request.state, falling back
    to the socket peer when the middleware is not installed.
    """
    if request is None:
        return None, None
    ip = getattr(request.state, "client_ip", None)
    ua = getattr(request.state, "user_agent", None)
    if ip is None:
        ip = request.client.host if request.client else None
    if ua is None:
        ua = request.headers.get("user-agent")
    return ip, ua


# -------- single-use tokens --------
@dataclass
class FlowResult:
    """Outcome of a token flow; the message is safe to show to the client."""

    success: bool
    message: str


def issue_single_use_token(ttl_minutes: int) -> tuple[str, str, datetime]:
    """Returns (raw token for the email link, sha256 to store, expiry)."""
    raw = generate_secure_token(32)
    return raw, hash_token(raw), utcnow() + timedelta(minutes=ttl_minutes)
