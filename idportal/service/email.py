from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Mapping, Optional, Protocol

from idportal.logging import get_logger

logger = get_logger(__name__)


class Mailer(Protocol):
    async def send(
        self, address: str, subject: str, template: str, variables: Mapping[str, object]
    ) -> bool:
        """Deliver a rendered template; False when delivery failed."""
        ...


_HTML_FRAME = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
<div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
{body}
<p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{from_name}</p>
</div>
</body>
</html>
"""

# name -> (text body, html body); both are str.format templates
TEMPLATES = {
    "reset-password": (
        """Hello {name},

A password reset was requested for the account "{uid}".
Visit the link below to choose a new password:

{link}

This link expires in {expires_minutes} minutes and can be used once.
If you did not request this, you can ignore this email.
""",
        """<h1>Reset your password</h1>
<p>Hello {name},</p>
<p>A password reset was requested for the account <b>{uid}</b>.</p>
<p><a href="{link}">Choose a new password</a></p>
<p>This link expires in {expires_minutes} minutes and can be used once.</p>
<p>If the link does not work, copy this URL: {link}</p>
""",
    ),
    "verify-account": (
        """Hello {name},

Please verify the account "{uid}" by visiting the link below:

{link}

This link expires in {expires_minutes} minutes and can be used once.
""",
        """<h1>Verify your account</h1>
<p>Hello {name},</p>
<p>Please verify the account <b>{uid}</b>.</p>
<p><a href="{link}">Verify account</a></p>
<p>This link expires in {expires_minutes} minutes and can be used once.</p>
<p>If the link does not work, copy this URL: {link}</p>
""",
    ),
    "welcome": (
        """Hello {name},

Your account "{uid}" is now active. You can sign in at:

{link}
""",
        """<h1>Welcome</h1>
<p>Hello {name},</p>
<p>Your account <b>{uid}</b> is now active.</p>
<p><a href="{link}">Sign in</a></p>
""",
    ),
}


class EmailService:
    """SMTP mailer for the portal's transactional emails.

    Without an SMTP host the rendered message is logged instead of sent.
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
        from_name: str = "Identity Portal",
        subject_prefix: str = "",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.subject_prefix = subject_prefix
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

    def render(self, template: str, variables: Mapping[str, object]) -> tuple[str, str]:
        try:
            text_tpl, html_tpl = TEMPLATES[template]
        except KeyError as exc:
            raise ValueError(f"unknown email template {template!r}") from exc
        values = {"from_name": self.from_name, **variables}
        html_body = _HTML_FRAME.format(body=html_tpl.format(**values), from_name=self.from_name)
        return text_tpl.format(**values), html_body

    async def send(
        self, address: str, subject: str, template: str, variables: Mapping[str, object]
    ) -> bool:
        if self.subject_prefix:
            subject = f"[{self.subject_prefix}] {subject}"
        text_body, html_body = self.render(template, variables)
        return await asyncio.to_thread(self._send_email, address, subject, html_body, text_body)

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
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
                host=self.smtp_host,
                user=self.smtp_user,
                error_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=self._redact_email(to_email), error=str(e)
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
        except (ssl.SSLError, OSError) as e:
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
