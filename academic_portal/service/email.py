from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.text import MIMEText
from typing import Any, Callable, Optional, Set

from academic_portal.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Plain-text transactional email over SMTP.

    When SMTP is not configured (development) messages are logged instead
    of sent.
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
        from_name: str = "Academic Portal",
        base_url: Optional[str] = None,
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"
        self.reset_ttl_minutes = reset_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(self, to_email: str, subject: str, body: str) -> bool:
        """Send a plain-text message; returns False on any delivery failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to_email),
                subject=subject,
                body_preview=body[:200],
            )
            return True

        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
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
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                recipient=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

        logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
        return True

    def send_registration_received(self, to_email: str, role: str) -> bool:
        subject = "Your Academic Portal registration was received"
        body = f"""Thank you for registering with the Academic Portal as a {role}.

Your registration is pending review by an administrator. You will receive
another message once it has been approved, and you will be able to sign in
from that point on.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, body)

    def send_registration_approved(self, to_email: str, role: str) -> bool:
        subject = "Your Academic Portal registration was approved"
        body = f"""Your registration as a {role} has been approved.

You can now sign in at {self.base_url}/login

---
{self.from_name}
"""
        return self._send_email(to_email, subject, body)

    def send_registration_rejected(self, to_email: str, reason: str) -> bool:
        subject = "Your Academic Portal registration was not approved"
        body = f"""Your registration could not be approved.

Reason: {reason}

If you believe this is a mistake please contact the administration office.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, body)

    def send_password_reset(self, to_email: str, token: str) -> bool:
        reset_url = f"{self.base_url}/reset-password/{token}"
        subject = "Reset your Academic Portal password"
        body = f"""We received a request to reset your password. Visit the link below to choose a new one:

{reset_url}

This link will expire in {self.reset_ttl_minutes} minutes and can be used once.

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, body)


class NotificationDispatcher:
    """Fire-and-forget delivery of notifications after a state change commits.

    Blocking sends run on a worker thread. Failures are logged and never
    propagate to the caller, so a transition is never rolled back because
    a message could not be delivered.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    async def _run(self, kind: str, func: Callable[..., Any], *args: Any) -> None:
        try:
            delivered = await asyncio.to_thread(func, *args)
        except Exception as exc:
            logger.warning("notification_failed", kind=kind, error=str(exc))
            return
        if delivered is False:
            logger.warning("notification_failed", kind=kind, error="delivery rejected")

    def dispatch(self, kind: str, func: Callable[..., Any], *args: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no event loop (scripts): deliver inline, still never raising
            try:
                func(*args)
            except Exception as exc:
                logger.warning("notification_failed", kind=kind, error=str(exc))
            return
        task = loop.create_task(self._run(kind, func, *args))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for all outstanding notifications scheduled on this loop."""
        loop = asyncio.get_running_loop()
        while True:
            local = [t for t in self._tasks if t.get_loop() is loop and not t.done()]
            if not local:
                return
            await asyncio.gather(*local, return_exceptions=True)
