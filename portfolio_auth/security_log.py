# portfolio_auth/security_log.py
"""
Append-only security event log.

Every entry is sanitised before it leaves this module: emails and IPs are
masked, user agents truncated, and any details key that names a credential is
dropped. Writing uses its own database session so that a failing log write can
never roll back, or be rolled back by, the operation being logged.
"""
from __future__ import annotations

import re
from enum import Enum
from typing import Any, Mapping, Optional

from portfolio_auth.database import SessionLocal
from portfolio_auth.logging import get_logger
from portfolio_auth.models import SecurityLog

logger = get_logger(__name__)

MAX_USER_AGENT_LENGTH = 100
MAX_DETAIL_LENGTH = 200

_SECRET_KEY_PARTS = ("password", "secret", "token")
_EMAIL_RE = re.compile(r"\b[\w.+-]+@[\w.-]+\.\w+\b")


class SecurityEventType(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAIL = "LOGIN_FAIL"
    REGISTER_SUCCESS = "REGISTER_SUCCESS"
    REGISTER_FAIL = "REGISTER_FAIL"
    LOGOUT = "LOGOUT"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"

    SESSION_CREATED = "SESSION_CREATED"
    SESSION_CREATE_FAIL = "SESSION_CREATE_FAIL"
    SESSION_REFRESH_FAIL = "SESSION_REFRESH_FAIL"
    SESSION_REVOKED = "SESSION_REVOKED"
    ALL_SESSIONS_REVOKED = "ALL_SESSIONS_REVOKED"
    INVALID_SESSION = "INVALID_SESSION"

    EMAIL_SEND_SUCCESS = "EMAIL_SEND_SUCCESS"
    EMAIL_SEND_FAIL = "EMAIL_SEND_FAIL"
    EMAIL_VERIFICATION_ISSUED = "EMAIL_VERIFICATION_ISSUED"
    EMAIL_VERIFICATION_RESEND = "EMAIL_VERIFICATION_RESEND"
    EMAIL_VERIFICATION_SUCCESS = "EMAIL_VERIFICATION_SUCCESS"
    EMAIL_VERIFICATION_FAIL = "EMAIL_VERIFICATION_FAIL"

    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    PASSWORD_RESET_ISSUED = "PASSWORD_RESET_ISSUED"
    PASSWORD_RESET_SUCCESS = "PASSWORD_RESET_SUCCESS"
    PASSWORD_RESET_FAIL = "PASSWORD_RESET_FAIL"
    PASSWORD_CHANGE_SUCCESS = "PASSWORD_CHANGE_SUCCESS"
    PASSWORD_CHANGE_FAIL = "PASSWORD_CHANGE_FAIL"

    ACCOUNT_DEACTIVATED = "ACCOUNT_DEACTIVATED"
    ACCOUNT_DEACTIVATION_FAIL = "ACCOUNT_DEACTIVATION_FAIL"
    ACCOUNT_REACTIVATED = "ACCOUNT_REACTIVATED"
    ACCOUNT_REACTIVATION_FAIL = "ACCOUNT_REACTIVATION_FAIL"
    ACCOUNT_DELETED = "ACCOUNT_DELETED"
    ACCOUNT_DELETION_FAIL = "ACCOUNT_DELETION_FAIL"

    ADMIN_ACCESS = "ADMIN_ACCESS"
    AUTHORIZATION_FAIL = "AUTHORIZATION_FAIL"
    RATE_LIMIT_HIT = "RATE_LIMIT_HIT"
    CSRF_FAIL = "CSRF_FAIL"

    SUSPICIOUS_SESSION_ACTIVITY = "SUSPICIOUS_SESSION_ACTIVITY"
    SESSION_HEALTH_CHECK = "SESSION_HEALTH_CHECK"
    SESSION_MAINTENANCE = "SESSION_MAINTENANCE"


def mask_email(email: str) -> str:
    """Keep the first character of the local part and the domain."""
    local, _, domain = email.partition("@")
    if not local or not domain:
        return "[invalid-email]"
    return f"{local[0]}***@{domain}"


def mask_ip(ip: str) -> str:
    if ":" in ip:
        return ip.split(":")[0] + ":***"
    parts = ip.split(".")
    if len(parts) == 4:
        return f"{parts[0]}.{parts[1]}.***"
    return "***"


def truncate_user_agent(user_agent: str) -> str:
    return _EMAIL_RE.sub("[email]", user_agent[:MAX_USER_AGENT_LENGTH])


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in _SECRET_KEY_PARTS)


def _is_ip_key(key: str) -> bool:
    lowered = key.lower().replace("_", "")
    return lowered in ("ip", "ips", "ipaddress", "ipaddresses", "clientip", "clientips")


def _sanitize_value(key: str, value: Any) -> Any:
    if isinstance(value, Mapping):
        return sanitize_details(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, str):
        if "email" in key.lower():
            value = mask_email(value)
        elif _is_ip_key(key):
            value = mask_ip(value)
        else:
            value = _EMAIL_RE.sub("[email]", value)
        if len(value) > MAX_DETAIL_LENGTH:
            value = value[:MAX_DETAIL_LENGTH] + "..."
        return value
    if isinstance(value, (int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        # elements inherit the key's masking rule
        return [_sanitize_value(key, item) for item in value]
    return _EMAIL_RE.sub("[email]", str(value))[:MAX_DETAIL_LENGTH]


def sanitize_details(details: Mapping[str, Any]) -> dict[str, Any]:
    return {key: _sanitize_value(key, value) for key, value in details.items() if not _is_secret_key(key)}


def build_log_entry(
    event_type: SecurityEventType,
    *,
    user_id: Optional[int] = None,
    email: Optional[str] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    details: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    return {
        "event_type": SecurityEventType(event_type).value,
        "user_id": user_id,
        "email": mask_email(email) if email else None,
        "ip_address": mask_ip(ip) if ip else None,
        "user_agent": truncate_user_agent(user_agent) if user_agent else None,
        "details": sanitize_details(details) if details else None,
    }


def log_security_event(
    event_type: SecurityEventType,
    *,
    user_id: Optional[int] = None,
    email: Optional[str] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    details: Optional[Mapping[str, Any]] = None,
) -> None:
    """Fire-and-forget: never raises into the caller."""
    try:
        entry = build_log_entry(
            event_type, user_id=user_id, email=email, ip=ip, user_agent=user_agent, details=details
        )
    except Exception:
        logger.warning("security_event_sanitize_failed", event_type=str(event_type))
        return

    logger.info("security_event", **entry)

    db = SessionLocal()
    try:
        db.add(SecurityLog(**entry))
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.warning("security_event_persist_failed", event_type=entry["event_type"], error=type(exc).__name__)
    finally:
        db.close()
