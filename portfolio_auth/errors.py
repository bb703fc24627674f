# portfolio_auth/errors.py
from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from portfolio_auth.logging import get_logger

logger = get_logger(__name__)


class ServiceError(Exception):
    """Base class for errors that cross the HTTP boundary.

    The message is what the client sees, so it must never carry internals.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(self, message: str, *, status_code: Optional[int] = None, headers: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.headers = headers or {}


class ValidationError(ServiceError):
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Wrong credentials, locked account, invalid session or token."""

    status_code = 401
    error_code = "unauthorized"


class CSRFError(AuthenticationError):
    status_code = 403
    error_code = "csrf_failed"


class AuthorizationError(ServiceError):
    """Authenticated, but not allowed."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class RateLimitExceededError(ServiceError):
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "Too many requests. Please try again later.", *, retry_after: int = 60) -> None:
        super().__init__(message, headers={"Retry-After": str(max(1, retry_after))})
        self.retry_after = retry_after


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class SessionCreationError(ServerError):
    """A session row could not be written; the login must not proceed."""


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.error_code},
            headers=exc.headers or None,
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path, method=request.method)
        return JSONResponse(
            status_code=500,
            content={"detail": "An unexpected error occurred.", "code": "server_error"},
        )
