# portfolio_auth/middleware/security.py
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from portfolio_auth.config import settings


class ClientContextMiddleware(BaseHTTPMiddleware):
    """
    Resolve the client IP and User-Agent once per request and attach them to
    request.state for logging, rate limiting and session records.
    """
    async def dispatch(self, request: Request, call_next):
        client_ip = request.client.host if request.client else None
        if settings.TRUST_PROXY_HEADERS:
            forwarded = request.headers.get("x-forwarded-for")
            if forwarded:
                # left-most hop is the original client
                client_ip = forwarded.split(",")[0].strip() or client_ip

        request.state.client_ip = client_ip
        request.state.user_agent = request.headers.get("user-agent")
        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Standard hardening headers on every response."""

    headers = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Content-Security-Policy": "default-src 'self'; frame-ancestors 'none'",
        "Cache-Control": "no-store",
    }

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in self.headers.items():
            response.headers.setdefault(name, value)
        if request.url.scheme == "https":
            response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        return response
