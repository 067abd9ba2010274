from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional, Protocol, Sequence
from urllib.parse import urlencode

from shelfkeeper.logging import get_logger, redact_email
from shelfkeeper.storage.models import User

logger = get_logger(__name__)


class EmailNotifier(Protocol):
    def send_verification_email(self, user: User, token: str) -> bool: ...

    def send_password_reset_email(self, user: User, token: str) -> bool: ...

    def send_password_change_notification(self, user: User) -> bool: ...


_HTML_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Georgia, 'Times New Roman', serif; line-height: 1.6; color: #2d2a26; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #7a4b2a; color: white; padding: 12px 24px; border-radius: 6px; text-decoration: none; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #6b6259; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer"><p>{sender}</p>{footer}</div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail for account verification and password recovery.

    Without an SMTP host the message is logged instead of sent, which keeps
    local development and tests free of a mail server.
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
        from_name: str = "Shelfkeeper Library",
        frontend_url: str = "http://localhost:5173",
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = frontend_url.rstrip("/")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _link(self, path: str, token: str) -> str:
        return f"{self.frontend_url}{path}?{urlencode({'token': token})}"

    def _render(
        self, title: str, paragraphs: Sequence[str], link: Optional[tuple[str, str]] = None
    ) -> tuple[str, str]:
        """Build (html, text) bodies from plain paragraphs and an optional call to action."""
        html_parts = [f"<p>{escape(p)}</p>" for p in paragraphs]
        text_parts = [title, ""] + [p + "\n" for p in paragraphs]
        footer = ""
        if link:
            label, url = link
            safe_url = escape(url, quote=True)
            html_parts.insert(
                1, f'<p style="margin: 30px 0;"><a href="{safe_url}" class="button">{escape(label)}</a></p>'
            )
            footer = f"<p>If the button doesn't work, paste this address into your browser: {safe_url}</p>"
            text_parts.insert(3, url + "\n")
        html_body = _HTML_LAYOUT.format(
            title=escape(title),
            body="\n        ".join(html_parts),
            sender=escape(self.from_name),
            footer=footer,
        )
        text_body = "\n".join(text_parts) + f"\n---\n{self.from_name}\n"
        return html_body, text_body

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message; True on success, False on any SMTP failure."""
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
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    self._login_and_send(server, to_email, msg)
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    self._login_and_send(server, to_email, msg)
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
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            # Covers connection refusal and timeouts
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def _login_and_send(self, server: smtplib.SMTP, to_email: str, msg: MIMEMultipart) -> None:
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
        server.sendmail(self.from_email, to_email, msg.as_string())

    def send_verification_email(self, user: User, token: str) -> bool:
        url = self._link("/verify-email", token)
        html_body, text_body = self._render(
            "Verify your email address",
            [
                "Please confirm your address to finish setting up your library account.",
                "This link will expire in 24 hours.",
                "If you did not create an account, you can ignore this email.",
            ],
            link=("Verify Email", url),
        )
        return self._send_email(user.email, "Verify your email address", html_body, text_body)

    def send_password_reset_email(self, user: User, token: str) -> bool:
        url = self._link("/reset-password", token)
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password.",
                "This link will expire in 1 hour.",
                "If you did not request a password reset, you can ignore this email.",
            ],
            link=("Reset Password", url),
        )
        return self._send_email(user.email, "Reset your password", html_body, text_body)

    def send_password_change_notification(self, user: User) -> bool:
        html_body, text_body = self._render(
            "Password changed",
            [
                "Your password has been changed.",
                "If you did not make this change, please contact support immediately.",
            ],
        )
        return self._send_email(
            user.email, "Your password has been changed", html_body, text_body
        )
