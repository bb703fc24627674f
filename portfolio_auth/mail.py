# portfolio_auth/mail.py
"""
Outbound mail: the Mailer protocol the security flows depend on, an SMTP
implementation, and the templates for verification, reset and security
notification messages.
"""
from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional, Protocol
from urllib.parse import urlencode

from portfolio_auth.auth.utils import utcnow
from portfolio_auth.config import settings
from portfolio_auth.logging import get_logger
from portfolio_auth.security_log import SecurityEventType, log_security_event, mask_email

logger = get_logger(__name__)


class Mailer(Protocol):
    def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool: ...


class SMTPMailer:
    """Sends over SMTP; without a host configured it only logs the message."""

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Portfolio",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info("email_dev_mode", to=mask_email(to), subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("email_send_failed", to=mask_email(to), subject=subject, error=type(exc).__name__)
            return False

        logger.info("email_sent", to=mask_email(to), subject=subject)
        return True


def get_mailer() -> Mailer:
    return SMTPMailer(
        smtp_host=settings.SMTP_HOST,
        smtp_port=settings.SMTP_PORT,
        smtp_user=settings.SMTP_USER,
        smtp_password=settings.SMTP_PASSWORD,
        smtp_use_tls=settings.SMTP_USE_TLS,
        from_email=settings.MAIL_FROM,
        from_name=settings.SITE_NAME,
    )


# -------- templates --------
@dataclass
class EmailMessage:
    subject: str
    html_body: str
    text_body: str


_LAYOUT = """<!DOCTYPE html>
<html>
  <head><meta charset="utf-8"><title>{title}</title></head>
  <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <h1>{title}</h1>
    {content}
    <p style="font-size: 12px; color: #666;">This is an automated message. Please do not reply to this email.</p>
  </body>
</html>
"""


def _link(path: str, token: str) -> str:
    return f"{settings.SITE_URL.rstrip('/')}{path}?{urlencode({'token': token})}"


def verification_email(name: str, token: str, expiry_minutes: int) -> EmailMessage:
    url = _link("/auth/verify-email", token)
    safe_name, safe_url = escape(name or "there"), escape(url)
    html_body = _LAYOUT.format(
        title="Verify Your Email Address",
        content=(
            f"<p>Hello {safe_name},</p>"
            "<p>Thank you for registering! Please click the link below to verify your email address:</p>"
            f'<p><a href="{safe_url}">Verify Email Address</a></p>'
            f"<p>Or copy and paste this link into your browser: {safe_url}</p>"
            f"<p>This verification link will expire in {expiry_minutes} minutes.</p>"
            "<p>If you didn't create an account, please ignore this email.</p>"
        ),
    )
    text_body = (
        f"Hello {name or 'there'},\n\n"
        f"Verify your email address by opening this link:\n{url}\n\n"
        f"The link expires in {expiry_minutes} minutes. "
        "If you didn't create an account, please ignore this email.\n"
    )
    return EmailMessage("Verify Your Email Address", html_body, text_body)


def password_reset_email(name: str, token: str, expiry_minutes: int) -> EmailMessage:
    url = _link("/auth/reset-password", token)
    safe_name, safe_url = escape(name or "there"), escape(url)
    html_body = _LAYOUT.format(
        title="Reset Your Password",
        content=(
            f"<p>Hello {safe_name},</p>"
            "<p>You requested to reset your password. Click the link below to set a new password:</p>"
            f'<p><a href="{safe_url}">Reset Password</a></p>'
            f"<p>Or copy and paste this link into your browser: {safe_url}</p>"
            f"<p><strong>Security Notice:</strong> This link will expire in {expiry_minutes} minutes. "
            "If you didn't request a password reset, ignore this email and your password will remain unchanged.</p>"
        ),
    )
    text_body = (
        f"Hello {name or 'there'},\n\n"
        f"Reset your password by opening this link:\n{url}\n\n"
        f"The link expires in {expiry_minutes} minutes. If you didn't request this, "
        "ignore this email and your password will remain unchanged.\n"
    )
    return EmailMessage("Reset Your Password", html_body, text_body)


def security_notification_email(name: str, event: str, details: str) -> EmailMessage:
    when = utcnow().strftime("%Y-%m-%d %H:%M UTC")
    html_body = _LAYOUT.format(
        title="Security Notification",
        content=(
            f"<p>Hello {escape(name or 'there')},</p>"
            f"<p><strong>Security Event:</strong> {escape(event)}</p>"
            f"<p>{escape(details)}</p>"
            "<p>If this wasn't you, change your password immediately and contact support.</p>"
            f"<p>Time: {when}</p>"
        ),
    )
    text_body = (
        f"Hello {name or 'there'},\n\nSecurity event: {event}\n{details}\n\n"
        f"If this wasn't you, change your password immediately and contact support.\nTime: {when}\n"
    )
    return EmailMessage(f"Security Alert: {event}", html_body, text_body)


# -------- delivery --------
def deliver_email(mailer: Mailer, to: str, message: EmailMessage, *, user_id: Optional[int], kind: str) -> bool:
    """Send and record the outcome; a failed send never raises."""
    try:
        sent = mailer.send(to, message.subject, message.html_body, message.text_body)
    except Exception as exc:
        logger.error("mailer_raised", kind=kind, error=type(exc).__name__)
        sent = False

    log_security_event(
        SecurityEventType.EMAIL_SEND_SUCCESS if sent else SecurityEventType.EMAIL_SEND_FAIL,
        user_id=user_id,
        email=to,
        details={"type": kind},
    )
    return sent


def send_security_notification(mailer: Mailer, user_id: int, email: str, name: str, event: str, details: str) -> bool:
    return deliver_email(
        mailer, email, security_notification_email(name, event, details), user_id=user_id, kind="security_notification"
    )
