from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import quote

from cobaltauth.config import Settings
from cobaltauth.logging import get_logger

logger = get_logger(__name__)

_VERIFY_TEXT = """Verify your {product} email

Hi {username},

Please confirm your email address by visiting the link below:

{verify_url}

This link expires in {ttl_hours} hours and can be used once.

---
{product}
"""

_VERIFY_HTML = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
    <h1>Verify your email</h1>
    <p>Hi {username}, please confirm your email address:</p>
    <p><a href="{verify_url}">Verify Email</a></p>
    <p>This link expires in {ttl_hours} hours and can be used once.</p>
    <p style="font-size: 12px; color: #5b6470;">If the link doesn't work, paste this URL: {verify_url}</p>
</body>
</html>
"""


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Transactional mail over SMTP.

    Without ``smtp_host`` and a sender address the message is logged as
    ``email_dev_mode`` instead of sent. Delivery failures are logged and
    reported as ``False``; callers never roll back on them.
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
        from_name: str = "Cobalt",
        base_url: str = "http://localhost:2727",
        verification_ttl_hours: int = 24,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url.rstrip("/")
        self.verification_ttl_hours = verification_ttl_hours

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            verification_ttl_hours=settings.email_verification_ttl_hours,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def verification_url(self, token: str) -> str:
        return f"{self.base_url}/verify-email?token={quote(token)}"

    def _deliver(self, msg: MIMEMultipart, to_email: str) -> None:
        context = ssl.create_default_context()
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

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
        *,
        conceal: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            preview = text_body
            if conceal:
                preview = preview.replace(quote(conceal), "***")
            preview = preview[:200]
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=preview,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        try:
            self._deliver(msg, to_email)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
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

    def send_email_verification(self, to_email: str, username: str, token: str) -> bool:
        verify_url = self.verification_url(token)
        params = {
            "product": self.from_name,
            "username": username,
            "verify_url": verify_url,
            "ttl_hours": self.verification_ttl_hours,
        }
        return self._send_email(
            to_email,
            f"Verify your {self.from_name} email",
            _VERIFY_HTML.format(**params),
            _VERIFY_TEXT.format(**params),
            conceal=token,
        )
