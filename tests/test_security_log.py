from unittest.mock import MagicMock

import pytest

from portfolio_auth import security_log
from portfolio_auth.models import SecurityLog
from portfolio_auth.security_log import (
    SecurityEventType,
    build_log_entry,
    log_security_event,
    mask_email,
    mask_ip,
    sanitize_details,
    truncate_user_agent,
)


@pytest.mark.parametrize(
    "email, masked",
    [
        ("ansel@example.com", "a***@example.com"),
        ("x@studio.photo", "x***@studio.photo"),
        ("not-an-email", "[invalid-email]"),
        ("@example.com", "[invalid-email]"),
    ],
)
def test_mask_email(email, masked):
    assert mask_email(email) == masked


@pytest.mark.parametrize(
    "ip, masked",
    [
        ("203.0.113.42", "203.0.***"),
        ("2001:db8::1", "2001:***"),
        ("garbage", "***"),
    ],
)
def test_mask_ip(ip, masked):
    assert mask_ip(ip) == masked


def test_user_agent_is_truncated_and_scrubbed():
    ua = "Mozilla/5.0 contact=leak@example.com " + "x" * 300
    result = truncate_user_agent(ua)
    assert len(result) <= 100
    assert "leak@example.com" not in result


def test_sanitize_details_drops_secrets_and_masks():
    details = {
        "password": "hunter2",
        "reset_token": "abc",
        "client_secret": "s",
        "email": "ansel@example.com",
        "ip": "198.51.100.7",
        "note": "sent to someone@example.com",
        "long": "y" * 500,
        "nested": {"new_password": "x", "count": 3},
        "kind": SecurityEventType.LOGIN_FAIL,
    }
    result = sanitize_details(details)

    assert "password" not in result
    assert "reset_token" not in result
    assert "client_secret" not in result
    assert result["email"] == "a***@example.com"
    assert result["ip"] == "198.51.***"
    assert "someone@example.com" not in result["note"]
    assert len(result["long"]) == 203
    assert result["nested"] == {"count": 3}
    assert result["kind"] == "LOGIN_FAIL"


def test_sanitize_details_masks_inside_collections():
    details = {
        "recipients": ["alice@example.com", "bob@example.com"],
        "ips": ("203.0.113.9",),
        "emails": {"carol@example.com"},
        "nested": [{"ip": "198.51.100.7", "token": "raw"}],
    }
    result = sanitize_details(details)

    assert result["recipients"] == ["[email]", "[email]"]
    assert result["ips"] == ["203.0.***"]
    assert result["emails"] == ["c***@example.com"]
    assert result["nested"] == [{"ip": "198.51.***"}]
    assert "example.com" not in str(result["recipients"])


def test_build_log_entry_masks_top_level_fields():
    entry = build_log_entry(
        SecurityEventType.LOGIN_FAIL,
        user_id=7,
        email="ansel@example.com",
        ip="203.0.113.42",
        user_agent="Safari",
        details={"reason": "invalid_password"},
    )
    assert entry == {
        "event_type": "LOGIN_FAIL",
        "user_id": 7,
        "email": "a***@example.com",
        "ip_address": "203.0.***",
        "user_agent": "Safari",
        "details": {"reason": "invalid_password"},
    }


def test_log_security_event_persists_sanitised_row(db):
    log_security_event(
        SecurityEventType.PASSWORD_RESET_REQUEST,
        user_id=3,
        email="ansel@example.com",
        ip="203.0.113.42",
        details={"token": "raw-secret", "reason": "requested"},
    )

    row = db.query(SecurityLog).one()
    assert row.event_type == "PASSWORD_RESET_REQUEST"
    assert row.email == "a***@example.com"
    assert row.ip_address == "203.0.***"
    assert row.details == {"reason": "requested"}


def test_log_security_event_never_raises(monkeypatch):
    broken = MagicMock()
    broken.commit.side_effect = RuntimeError("disk full")
    monkeypatch.setattr(security_log, "SessionLocal", lambda: broken)

    log_security_event(SecurityEventType.LOGIN_SUCCESS, user_id=1)

    broken.rollback.assert_called_once()
    broken.close.assert_called_once()


def test_unknown_event_type_is_rejected_quietly(db):
    log_security_event("NOT_A_REAL_EVENT")
    assert db.query(SecurityLog).count() == 0
