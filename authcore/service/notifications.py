from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from authcore.logging import get_logger
from authcore.storage.models import SecurityEvent

logger = get_logger(__name__)


class AlertNotifier(Protocol):
    async def send_security_alert(
        self, to_email: str, subject: str, text_body: str, html_body: str
    ) -> bool: ...


class AccountMailer(Protocol):
    async def send_password_reset(self, to_email: str, token: str) -> bool: ...

    async def send_email_verification(self, to_email: str, token: str) -> bool: ...


class SmsSender(Protocol):
    async def send_sms(self, phone: str, message: str) -> bool: ...


class MonitoringSink(Protocol):
    async def forward(self, event: SecurityEvent) -> None: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def redact_phone(phone: str) -> str:
    digits = phone or ""
    return f"***{digits[-4:]}" if len(digits) > 4 else "***"


class EmailNotifier:
    """Transactional and security-alert mail over SMTP.

    Falls back to logging the message when SMTP is not configured, which
    is the normal mode for development and tests. Sending runs in a worker
    thread so the event loop is never blocked on the SMTP conversation.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Authcore",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")

    @classmethod
    def from_settings(cls, settings) -> "EmailNotifier":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if it was handed to the server."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=(text_body or html_body)[:200],
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
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                refused=len(getattr(e, "recipients", {}) or {}),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    async def send_security_alert(
        self, to_email: str, subject: str, text_body: str, html_body: str
    ) -> bool:
        return await asyncio.to_thread(
            self._send_email, to_email, subject, html_body, text_body
        )

    async def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        subject = "Reset your password"
        text_body = (
            "We received a request to reset your password.\n\n"
            f"Visit the link below to choose a new password:\n\n{reset_url}\n\n"
            "If you didn't request this, you can safely ignore this email."
        )
        html_body = (
            "<h1>Reset your password</h1>"
            "<p>We received a request to reset your password.</p>"
            f'<p><a href="{reset_url}">Choose a new password</a></p>'
            "<p>If you didn't request this, you can safely ignore this email.</p>"
        )
        return await asyncio.to_thread(
            self._send_email, to_email, subject, html_body, text_body
        )

    async def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        subject = "Verify your email address"
        text_body = (
            "Thanks for signing up! Please verify your email address by visiting "
            f"the link below:\n\n{verify_url}"
        )
        html_body = (
            "<h1>Verify your email</h1>"
            "<p>Thanks for signing up! Please verify your email address:</p>"
            f'<p><a href="{verify_url}">Verify email</a></p>'
        )
        return await asyncio.to_thread(
            self._send_email, to_email, subject, html_body, text_body
        )


class LoggingSmsSender:
    """SMS sender used until a real provider is wired in; logs instead of sending."""

    async def send_sms(self, phone: str, message: str) -> bool:
        logger.info("sms_dev_mode", to=redact_phone(phone), length=len(message))
        return True


class LoggingMonitor:
    """Forwards high-severity events to the structured log stream."""

    async def forward(self, event: SecurityEvent) -> None:
        logger.warning(
            "high_severity_security_event",
            event_type=event.type.value,
            severity=event.severity.value,
            user_id=event.user_id,
            ip_addr=event.ip_addr,
            event_id=event.id,
            metadata=event.metadata,
        )
