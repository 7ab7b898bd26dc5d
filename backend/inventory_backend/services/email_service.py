"""Transactional mail for account verification and password reset."""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import quote

from inventory_backend.config import Settings

logger = logging.getLogger(__name__)


def _redact(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """
    SMTP mailer.

    When no SMTP host or sender is configured the message is logged instead
    of sent, so local runs work without a mail server.
    """

    def __init__(self, settings: Settings) -> None:
        self.smtp_host = settings.SMTP_HOST
        self.smtp_port = settings.SMTP_PORT
        self.smtp_user = settings.SMTP_USER
        self.smtp_password = settings.SMTP_PASSWORD
        self.smtp_use_tls = settings.SMTP_USE_TLS
        self.from_email = settings.MAIL_FROM or settings.SMTP_USER
        self.from_name = settings.MAIL_FROM_NAME
        self.base_url = settings.FRONTEND_URL.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def verification_link(self, token: str) -> str:
        return f"{self.base_url}/verify-email?token={quote(token)}"

    def reset_link(self, token: str) -> str:
        return f"{self.base_url}/reset-password?token={quote(token)}"

    def send_verification_email(self, to_email: str, name: str, token: str) -> bool:
        link = self.verification_link(token)
        text_body = (
            f"Hello {name},\n\n"
            f"Confirm your email address by opening the link below:\n{link}\n\n"
            "If you did not create an account you can ignore this message."
        )
        html_body = (
            f"<p>Hello {name},</p>"
            f"<p>Confirm your email address by opening <a href=\"{link}\">this link</a>.</p>"
            "<p>If you did not create an account you can ignore this message.</p>"
        )
        return self._send(to_email, "Verify your email address", html_body, text_body)

    def send_password_reset_email(self, to_email: str, name: str, token: str) -> bool:
        link = self.reset_link(token)
        text_body = (
            f"Hello {name},\n\n"
            f"Reset your password with the link below:\n{link}\n\n"
            "If you did not request a reset you can ignore this message."
        )
        html_body = (
            f"<p>Hello {name},</p>"
            f"<p>Reset your password with <a href=\"{link}\">this link</a>.</p>"
            "<p>If you did not request a reset you can ignore this message.</p>"
        )
        return self._send(to_email, "Reset your password", html_body, text_body)

    def _send(self, to_email: str, subject: str, html_body: str, text_body: Optional[str] = None) -> bool:
        """
        Deliver one message.

        Returns:
            bool: True when the message was handed to the server (or logged in dev mode)
        """
        if not self.is_configured:
            logger.info(
                "Email (dev mode) to=%s subject=%s body=%s",
                _redact(to_email),
                subject,
                (text_body or html_body)[:500],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email delivery to %s failed: %s", _redact(to_email), exc)
            return False

        logger.info("Email sent to=%s subject=%s", _redact(to_email), subject)
        return True
