# portfolio_auth/auth/dependencies.py
from dataclasses import dataclass
from datetime import datetime

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from portfolio_auth.auth.csrf import validate_csrf_pair
from portfolio_auth.auth.sessions import validate_session
from portfolio_auth.auth.utils import extract_client_context
from portfolio_auth.config import settings
from portfolio_auth.database import get_db
from portfolio_auth.errors import AuthenticationError, AuthorizationError, CSRFError
from portfolio_auth.models import User
from portfolio_auth.security_log import SecurityEventType, log_security_event


@dataclass
class CurrentSession:
    user: User
    session_id: int
    raw_session_id: str
    expires_at: datetime


# Helper dependency: resolve the session cookie to a live session and its user
def get_current_session(request: Request, db: Session = Depends(get_db)) -> CurrentSession:
    raw_session_id = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not raw_session_id:
        raise AuthenticationError("Authentication required.")

    result = validate_session(raw_session_id, db)
    if not result.is_valid:
        ip, ua = extract_client_context(request)
        log_security_event(
            SecurityEventType.INVALID_SESSION, ip=ip, user_agent=ua, details={"path": request.url.path}
        )
        # SessionCookieMiddleware drops the stale cookie
        request.state.clear_session_cookie = True
        raise AuthenticationError("Session expired or invalid. Please sign in again.")

    if result.refreshed:
        request.state.refreshed_session = (raw_session_id, result.expires_at)

    user = db.get(User, result.user_id)
    return CurrentSession(
        user=user,
        session_id=result.session_id,
        raw_session_id=raw_session_id,
        expires_at=result.expires_at,
    )


def get_current_user(current: CurrentSession = Depends(get_current_session)) -> User:
    return current.user


def require_csrf(request: Request) -> None:
    submitted = request.headers.get(settings.CSRF_HEADER_NAME)
    cookie_token = request.cookies.get(settings.CSRF_COOKIE_NAME)
    if validate_csrf_pair(submitted, cookie_token):
        return

    ip, ua = extract_client_context(request)
    log_security_event(
        SecurityEventType.CSRF_FAIL,
        ip=ip,
        user_agent=ua,
        details={
            "path": request.url.path,
            "method": request.method,
            "header_present": bool(submitted),
            "cookie_present": bool(cookie_token),
        },
    )
    raise CSRFError("Invalid or missing CSRF token.")


def require_admin(request: Request, current: CurrentSession = Depends(get_current_session)) -> User:
    user = current.user
    ip, ua = extract_client_context(request)
    if user.role != "admin":
        log_security_event(
            SecurityEventType.AUTHORIZATION_FAIL,
            user_id=user.id,
            email=user.email,
            ip=ip,
            user_agent=ua,
            details={"path": request.url.path, "required_role": "admin"},
        )
        raise AuthorizationError("Administrator access required.")

    log_security_event(
        SecurityEventType.ADMIN_ACCESS,
        user_id=user.id,
        email=user.email,
        ip=ip,
        details={"path": request.url.path, "method": request.method},
    )
    return user
