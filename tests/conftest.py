import os
import re

# settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from portfolio_auth import security_log
from portfolio_auth.auth.utils import hash_password
from portfolio_auth.config import settings
from portfolio_auth.database import Base, get_db
from portfolio_auth.mail import get_mailer
from portfolio_auth.main import app
from portfolio_auth.models import User

PASSWORD = "Sunset#Lens42"
NEW_PASSWORD = "Aperture!Wide9"

_TOKEN_RE = re.compile(r"token=([A-Za-z0-9_\-]+)")


class FakeMailer:
    """Records outgoing mail instead of sending it."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, to, subject, html_body, text_body):
        self.sent.append({"to": to, "subject": subject, "html": html_body, "text": text_body})
        return not self.fail

    def last_token(self):
        for message in reversed(self.sent):
            match = _TOKEN_RE.search(message["text"])
            if match:
                return match.group(1)
        return None


# --------------------------
# Database
# --------------------------
@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'auth.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine, monkeypatch):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    # security events are written through their own session
    monkeypatch.setattr(security_log, "SessionLocal", factory)
    return factory


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def make_user(db):
    def _make(email="ansel@example.com", password=PASSWORD, *, verified=True, role="user", name="Ansel", active=True):
        user = User(
            email=email,
            name=name,
            password=hash_password(password),
            email_verified=verified,
            role=role,
            is_active=active,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


# --------------------------
# HTTP
# --------------------------
@pytest.fixture
def client(session_factory, mailer):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_mailer] = lambda: mailer
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def csrf_client(client):
    """A client holding a CSRF cookie and sending the matching header."""
    token = client.get("/auth/csrf-token").json()["csrf_token"]
    client.headers[settings.CSRF_HEADER_NAME] = token
    return client


@pytest.fixture
def logged_in(csrf_client, make_user):
    user = make_user()
    response = csrf_client.post("/auth/login", json={"email": user.email, "password": PASSWORD})
    assert response.status_code == 200, response.text
    return user
