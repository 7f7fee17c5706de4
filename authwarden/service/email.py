from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional, Protocol

from authwarden.logging import get_logger

logger = get_logger(__name__)


class NotificationPort(Protocol):
    """Outbound account notifications. Return False when delivery failed."""

    def send_email_verification(self, to_email: str, token: str) -> bool:
        ...

    def send_password_reset(self, to_email: str, token: str) -> bool:
        ...

    def send_password_changed(self, to_email: str) -> bool:
        ...


_HTML_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2f5bea; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer">
            <p>{brand}</p>
            {footer}
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """SMTP delivery for verification, reset and password-changed messages.

    When SMTP is not configured the message is logged instead of sent, so
    local development and tests never need a mail server.
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
        from_name: str = "Store Admin",
        base_url: Optional[str] = None,
        verification_ttl_hours: int = 24,
        reset_ttl_minutes: int = 60,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(
        self,
        title: str,
        paragraphs: list[str],
        link: Optional[tuple[str, str]] = None,
    ) -> tuple[str, str]:
        """Build the (html, text) bodies for a message."""
        html_parts = [f"<p>{escape(p)}</p>" for p in paragraphs]
        text_parts = list(paragraphs)
        footer = ""
        if link:
            label, url = link
            html_parts.insert(
                1,
                f'<p style="margin: 30px 0;"><a href="{escape(url)}" class="button">{escape(label)}</a></p>',
            )
            text_parts.insert(1, url)
            footer = f"<p>If the button doesn't work, copy and paste this URL: {escape(url)}</p>"
        html_body = _HTML_LAYOUT.format(
            title=escape(title),
            body="\n        ".join(html_parts),
            brand=escape(self.from_name),
            footer=footer,
        )
        text_body = f"{title}\n\n" + "\n\n".join(text_parts) + f"\n\n---\n{self.from_name}\n"
        return html_body, text_body

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
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
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            # connection refused, DNS failures and socket timeouts
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            "Verify your email",
            [
                "Thanks for signing up! Please verify your email address using the link below.",
                f"This link will expire in {self.verification_ttl_hours} hours.",
            ],
            link=("Verify Email", verify_url),
        )
        return self._send_email(
            to_email, f"{self.from_name} - Please verify your email", html_body, text_body
        )

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Use the link below to choose a new one.",
                f"This link will expire in {self.reset_ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
            link=("Reset Password", reset_url),
        )
        return self._send_email(
            to_email, f"{self.from_name} - Password Reset Request", html_body, text_body
        )

    def send_password_changed(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Your password has been changed",
            [
                "The password for your account was just changed.",
                "If you didn't make this change, reset your password immediately and contact support.",
            ],
        )
        return self._send_email(
            to_email, f"{self.from_name} - Your Password Has Been Changed", html_body, text_body
        )


__all__ = ["EmailService", "NotificationPort"]
