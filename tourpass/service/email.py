from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Optional

from tourpass.config import Settings
from tourpass.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SenderIdentity:
    from_email: Optional[str]
    from_name: str
    reply_to: Optional[str] = None

    @property
    def header(self) -> str:
        return f"{self.from_name} <{self.from_email}>"


SenderProvider = Callable[[], SenderIdentity]


def settings_sender(settings: Settings) -> SenderProvider:
    """Sender identity read from settings each time a message is built."""

    def _provide() -> SenderIdentity:
        return SenderIdentity(
            from_email=settings.email_from_address or settings.smtp_user,
            from_name=settings.email_from_name,
            reply_to=settings.email_reply_to,
        )

    return _provide


_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #0f766e; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;">
            <a href="{link}" class="button">{action}</a>
        </p>
        <p>{expiry}</p>
        <div class="footer">
            <p>{brand}</p>
            <p>If the button doesn't work, copy and paste this URL: {link}</p>
        </div>
    </div>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

{intro}

{link}

{expiry}

---
{brand}
"""


def _describe_minutes(minutes: int) -> str:
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    return f"{minutes} minutes"


class EmailService:
    """Transactional account emails over SMTP.

    When no SMTP host or sender address is configured the message is logged
    instead of sent, which is how local development runs. Sender identity comes
    from an injected provider so runtime changes to the from/reply-to address
    apply without rebuilding the service.
    """

    def __init__(
        self,
        *,
        sender: SenderProvider,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        base_url: Optional[str] = None,
        verification_ttl_minutes: int = 24 * 60,
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.sender = sender
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.verification_ttl_minutes = verification_ttl_minutes
        self.reset_ttl_minutes = reset_ttl_minutes

    @classmethod
    def from_settings(
        cls, settings: Settings, sender: Optional[SenderProvider] = None
    ) -> "EmailService":
        return cls(
            sender=sender or settings_sender(settings),
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            base_url=settings.app_base_url,
            verification_ttl_minutes=settings.email_verification_ttl_hours * 60,
            reset_ttl_minutes=settings.password_reset_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.sender().from_email)

    @staticmethod
    def _redact_address(address: str) -> str:
        if "@" not in address:
            return "redacted"
        local, domain = address.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def build_message(
        self, to_address: str, subject: str, html_body: str, text_body: str
    ) -> MIMEMultipart:
        identity = self.sender()
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = identity.header
        msg["To"] = to_address
        if identity.reply_to:
            msg["Reply-To"] = identity.reply_to
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _send(self, to_address: str, subject: str, html_body: str, text_body: str) -> bool:
        """Deliver one message. Returns False on any delivery failure."""
        recipient = self._redact_address(to_address)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=recipient,
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        from_address = self.sender().from_email
        msg = self.build_message(to_address, subject, html_body, text_body)
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(from_address, to_address, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(from_address, to_address, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                recipient=recipient,
                host=self.smtp_host,
                smtp_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", recipient=recipient)
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                recipient=recipient,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except (ssl.SSLError, OSError) as exc:
            # Covers connection refused, DNS failures and timeouts
            logger.error(
                "email_transport_failed",
                recipient=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", recipient=recipient, subject=subject)
        return True

    def _render_and_send(
        self,
        to_address: str,
        *,
        subject: str,
        heading: str,
        intro: str,
        action: str,
        link: str,
        expiry: str,
    ) -> bool:
        brand = self.sender().from_name
        fields = dict(
            heading=heading, intro=intro, action=action, link=link, expiry=expiry, brand=brand
        )
        return self._send(
            to_address,
            subject,
            _HTML_TEMPLATE.format(**fields),
            _TEXT_TEMPLATE.format(**fields),
        )

    def send_email_verification(self, to_address: str, token: str) -> bool:
        brand = self.sender().from_name
        return self._render_and_send(
            to_address,
            subject=f"Verify your {brand} email",
            heading="Verify your email",
            intro="Thanks for signing up! Please confirm your email address to start booking tours.",
            action="Verify Email",
            link=f"{self.base_url}/verify-email?token={token}",
            expiry=f"This link will expire in {_describe_minutes(self.verification_ttl_minutes)}.",
        )

    def send_password_reset(self, to_address: str, token: str) -> bool:
        brand = self.sender().from_name
        return self._render_and_send(
            to_address,
            subject=f"Reset your {brand} password",
            heading="Reset your password",
            intro=(
                "We received a request to reset your password. If you didn't request "
                "this, you can safely ignore this email."
            ),
            action="Reset Password",
            link=f"{self.base_url}/reset-password?token={token}",
            expiry=f"This link will expire in {_describe_minutes(self.reset_ttl_minutes)}.",
        )
