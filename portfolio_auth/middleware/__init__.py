from portfolio_auth.middleware.security import ClientContextMiddleware, SecurityHeadersMiddleware
from portfolio_auth.middleware.session_middleware import SessionCookieMiddleware


__all__ = [
    "SessionCookieMiddleware",
    "ClientContextMiddleware",
    "SecurityHeadersMiddleware",
]
