from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol
from urllib.parse import urlencode

from authledger.logging import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    """Outbound delivery of reset and verification links."""

    def send(self, email: str, purpose: str, token: str) -> bool:
        ...


_MESSAGES = {
    "reset": (
        "Reset your password",
        "We received a request to reset your password. Use the link below to choose a new one:",
        "reset_token",
    ),
    "verify": (
        "Verify your email address",
        "Please confirm your email address by opening the link below:",
        "verify_token",
    ),
}


def redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """SMTP notifier; logs the message instead of sending when SMTP is not configured."""

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Authledger",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def link_for(self, purpose: str, token: str) -> str:
        _, _, param = _MESSAGES[purpose]
        return f"{self.base_url}/?{urlencode({param: token})}"

    def send(self, email: str, purpose: str, token: str) -> bool:
        if purpose not in _MESSAGES:
            raise ValueError(f"unsupported notification purpose: {purpose}")
        subject, lead, _ = _MESSAGES[purpose]
        link = self.link_for(purpose, token)
        text_body = f"{subject}\n\n{lead}\n\n{link}\n\nIf you did not ask for this, ignore this email.\n"
        html_body = (
            f"<html><body><h1>{subject}</h1><p>{lead}</p>"
            f'<p><a href="{link}">{link}</a></p>'
            "<p>If you did not ask for this, ignore this email.</p></body></html>"
        )
        return self._send_email(email, subject, html_body, text_body)

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info("email_dev_mode", to=redact_email(to_email), subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
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
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", host=self.smtp_host, error=str(exc))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True
