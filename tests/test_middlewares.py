from datetime import timedelta

import pytest
from fastapi import FastAPI, Request, Response
from fastapi.testclient import TestClient

from portfolio_auth.auth.sessions import set_session_cookie
from portfolio_auth.auth.utils import utcnow
from portfolio_auth.config import settings
from portfolio_auth.middleware import (
    ClientContextMiddleware,
    SecurityHeadersMiddleware,
    SessionCookieMiddleware,
)

COOKIE = settings.SESSION_COOKIE_NAME


# --------------------------
# Fixtures
# --------------------------
@pytest.fixture
def base_app():
    app = FastAPI()

    @app.get("/ping")
    async def ping():
        return {"msg": "pong"}

    @app.get("/whoami")
    async def whoami(request: Request):
        return {"ip": request.state.client_ip, "ua": request.state.user_agent}

    @app.get("/refreshed")
    async def refreshed(request: Request):
        request.state.refreshed_session = ("raw-session-id", utcnow() + timedelta(hours=12))
        return {"msg": "ok"}

    @app.get("/stale")
    async def stale(request: Request):
        request.state.clear_session_cookie = True
        return Response(status_code=401)

    @app.get("/route-sets-cookie")
    async def route_sets_cookie(request: Request, response: Response):
        request.state.clear_session_cookie = True
        set_session_cookie(response, "fresh-login", utcnow() + timedelta(hours=12))
        return {"msg": "ok"}

    return app


# --------------------------
# ClientContextMiddleware Tests
# --------------------------
def test_client_context_uses_socket_peer(base_app):
    app = base_app
    app.add_middleware(ClientContextMiddleware)
    client = TestClient(app)

    response = client.get("/whoami", headers={"User-Agent": "Lightroom/13", "X-Forwarded-For": "192.0.2.7"})

    # forwarded header is ignored unless proxies are trusted
    assert response.json() == {"ip": "testclient", "ua": "Lightroom/13"}


def test_client_context_trusts_proxy_when_configured(base_app, monkeypatch):
    monkeypatch.setattr(settings, "TRUST_PROXY_HEADERS", True)
    app = base_app
    app.add_middleware(ClientContextMiddleware)
    client = TestClient(app)

    response = client.get("/whoami", headers={"X-Forwarded-For": "192.0.2.7, 10.0.0.1"})

    assert response.json()["ip"] == "192.0.2.7"


# --------------------------
# SecurityHeadersMiddleware Tests
# --------------------------
def test_security_headers_present(base_app):
    app = base_app
    app.add_middleware(SecurityHeadersMiddleware)
    client = TestClient(app)

    response = client.get("/ping")

    assert response.status_code == 200
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["Cache-Control"] == "no-store"
    assert "frame-ancestors 'none'" in response.headers["Content-Security-Policy"]
    assert "Strict-Transport-Security" not in response.headers


def test_hsts_only_over_https(base_app):
    app = base_app
    app.add_middleware(SecurityHeadersMiddleware)
    client = TestClient(app, base_url="https://testserver")

    response = client.get("/ping")
    assert response.headers["Strict-Transport-Security"].startswith("max-age=")


# --------------------------
# SessionCookieMiddleware Tests
# --------------------------
def test_session_cookie_untouched_by_default(base_app):
    app = base_app
    app.add_middleware(SessionCookieMiddleware)
    client = TestClient(app)

    response = client.get("/ping")
    assert "set-cookie" not in response.headers


def test_session_cookie_reissued_after_refresh(base_app):
    app = base_app
    app.add_middleware(SessionCookieMiddleware)
    client = TestClient(app)

    response = client.get("/refreshed")

    cookie = response.headers["set-cookie"]
    assert cookie.startswith(f"{COOKIE}=raw-session-id")
    assert "HttpOnly" in cookie


def test_session_cookie_cleared_for_stale_session(base_app):
    app = base_app
    app.add_middleware(SessionCookieMiddleware)
    client = TestClient(app)
    client.cookies.set(COOKIE, "stale")

    response = client.get("/stale")

    assert response.status_code == 401
    cookie = response.headers["set-cookie"]
    assert cookie.startswith(f'{COOKIE}=""')
    assert "Max-Age=0" in cookie


def test_session_cookie_set_by_route_wins(base_app):
    app = base_app
    app.add_middleware(SessionCookieMiddleware)
    client = TestClient(app)

    response = client.get("/route-sets-cookie")

    cookies = response.headers.get_list("set-cookie")
    assert len(cookies) == 1
    assert cookies[0].startswith(f"{COOKIE}=fresh-login")
