from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Set

from taskguard.logging import get_logger, redact_email

logger = get_logger(__name__)

_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        {body}
        <div class="footer">
            <p>{from_name}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailSender:
    """Transactional email over SMTP.

    Every ``send_*`` call is fire-and-forget: delivery runs in a worker
    thread when an event loop is running, failures are logged and never
    raised. Without SMTP configuration the message is logged instead
    (dev mode).
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
        from_name: str = "TaskGuard",
        base_url: Optional[str] = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._pending: Set[asyncio.Task] = set()

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
        """Send one message via SMTP; returns False on any delivery failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=redact_email(to_email),
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
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout_seconds
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host,
                    self.smtp_port,
                    context=context,
                    timeout=self.timeout_seconds,
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", recipient=redact_email(to_email), error=str(e)
            )
            return False
        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                "email_send_failed",
                recipient=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", recipient=redact_email(to_email), subject=subject)
        return True

    def _dispatch(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        if not self.is_configured:
            self._send_email(to_email, subject, html_body, text_body)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._send_email(to_email, subject, html_body, text_body)
            return
        task = loop.create_task(
            asyncio.to_thread(self._send_email, to_email, subject, html_body, text_body)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _render(self, heading: str, body: str) -> str:
        return _TEMPLATE.format(heading=heading, body=body, from_name=self.from_name)

    def send_verification(self, to_email: str, token: str) -> None:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        html_body = self._render(
            "Verify your email",
            f"""<p>Thanks for signing up! Please verify your email address:</p>
        <p style="margin: 30px 0;"><a href="{verify_url}" class="button">Verify Email</a></p>
        <p>This link will expire in 24 hours.</p>
        <p>If the button doesn't work, copy and paste this URL: {verify_url}</p>""",
        )
        text_body = f"""Verify your {self.from_name} email

Thanks for signing up! Please verify your email address by visiting the link below:

{verify_url}

This link will expire in 24 hours.
"""
        self._dispatch(to_email, f"Verify your {self.from_name} email", html_body, text_body)

    def send_password_reset(self, to_email: str, token: str) -> None:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body = self._render(
            "Reset your password",
            f"""<p>We received a request to reset your password.</p>
        <p style="margin: 30px 0;"><a href="{reset_url}" class="button">Reset Password</a></p>
        <p>This link will expire in 1 hour. If you didn't request this, you can safely ignore this email.</p>""",
        )
        text_body = f"""Reset your {self.from_name} password

We received a request to reset your password. Visit the link below to choose a new password:

{reset_url}

This link will expire in 1 hour.

If you didn't request this, you can safely ignore this email.
"""
        self._dispatch(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )

    def send_login_alert(
        self,
        to_email: str,
        *,
        device_type: str,
        ip_addr: Optional[str],
        user_agent: Optional[str],
        when: datetime,
    ) -> None:
        stamp = when.strftime("%Y-%m-%d %H:%M UTC")
        where = ip_addr or "an unknown address"
        browser = user_agent or "unknown"
        # User-Agent and address are client-controlled
        html_body = self._render(
            "New sign-in to your account",
            f"""<p>Your account was signed in from a new {html.escape(device_type)} device at {stamp}.</p>
        <p>IP address: {html.escape(where)}<br>Browser: {html.escape(browser)}</p>
        <p>If this wasn't you, reset your password and review your active sessions.</p>""",
        )
        text_body = f"""New sign-in to your {self.from_name} account

Your account was signed in from a new {device_type} device at {stamp}.
IP address: {where}
Browser: {browser}

If this wasn't you, reset your password and review your active sessions.
"""
        self._dispatch(to_email, "New sign-in to your account", html_body, text_body)
