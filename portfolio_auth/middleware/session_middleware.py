# portfolio_auth/middleware/session_middleware.py
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from portfolio_auth.auth.sessions import clear_session_cookie, set_session_cookie
from portfolio_auth.config import settings


def _sets_session_cookie(response: Response) -> bool:
    prefix = f"{settings.SESSION_COOKIE_NAME}="
    return any(value.startswith(prefix) for value in response.headers.getlist("set-cookie"))


class SessionCookieMiddleware(BaseHTTPMiddleware):
    """
    Keeps the browser cookie in step with the server-side session.
    get_current_session records on request.state when a session slid its
    expiry (re-issue the cookie with the new expiry) or turned out to be
    invalid (drop the cookie). Routes that set or clear the cookie
    themselves are left alone.
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        if _sets_session_cookie(response):
            return response

        if getattr(request.state, "clear_session_cookie", False):
            clear_session_cookie(response)
            return response

        refreshed = getattr(request.state, "refreshed_session", None)
        if refreshed and response.status_code < 400:
            raw_session_id, expires_at = refreshed
            set_session_cookie(response, raw_session_id, expires_at)
        return response
