from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from collections import deque
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Coroutine, Deque, Optional, Set

from tollgate.logging import get_logger, redact_email

logger = get_logger(__name__)

_OUTBOX_SIZE = 50


class EmailService:
    """Outbound notifications for the account lifecycle.

    Supports:
    - SMTP with TLS/SSL
    - Email change verification codes and change notices
    - Password reset and address verification links
    - Fallback to logging when not configured (dev mode)

    Senders return ``True`` on delivery and ``False`` on failure; they never
    raise, so callers decide whether a failed send matters.
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
        from_name: str = "Tollgate",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        # Messages "sent" in dev mode, newest last
        self.outbox: Deque[dict[str, str]] = deque(maxlen=_OUTBOX_SIZE)
        self._pending: Set[asyncio.Task] = set()

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        if not self.is_configured:
            logger.info("email_dev_mode", to=redact_email(to_email), subject=subject)
            self.outbox.append({"to": to_email, "subject": subject, "text": text_body})
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

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

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
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
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def _render(self, heading: str, paragraphs: list[str]) -> tuple[str, str]:
        html_paragraphs = "\n".join(f"        <p>{html.escape(p)}</p>" for p in paragraphs)
        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
        <h1>{html.escape(heading)}</h1>
{html_paragraphs}
        <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{html.escape(self.from_name)}</p>
    </div>
</body>
</html>
"""
        text_body = "\n\n".join([heading, *paragraphs, f"---\n{self.from_name}"]) + "\n"
        return html_body, text_body

    def send_email_change_verification(
        self, to_email: str, code: str, *, expires_hours: int = 24
    ) -> bool:
        """Send the numeric code confirming ownership of a new address."""
        html_body, text_body = self._render(
            "Confirm your new email address",
            [
                "Use this code to finish changing the email address on your account:",
                code,
                f"The code expires in {expires_hours} hours.",
                "If you did not ask to change your email, you can ignore this message.",
            ],
        )
        return self._send_email(to_email, "Verify your new email address", html_body, text_body)

    def send_email_changed_notice(
        self, to_email: str, *, old_email: str, new_email: str
    ) -> bool:
        """Tell an address (old or new) that the account email has changed."""
        html_body, text_body = self._render(
            "Your email address was changed",
            [
                f"The email address on your account changed from {old_email} to {new_email}.",
                "If you did not make this change, contact support immediately.",
            ],
        )
        return self._send_email(to_email, "Your email address was changed", html_body, text_body)

    def send_password_reset(self, to_email: str, reset_link: str) -> bool:
        html_body, text_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Follow this link to choose a new one:",
                reset_link,
                "If you didn't request this, you can safely ignore this email.",
            ],
        )
        return self._send_email(to_email, "Reset your password", html_body, text_body)

    def send_email_verification(self, to_email: str, verify_link: str) -> bool:
        html_body, text_body = self._render(
            "Verify your email",
            [
                "Thanks for signing up! Please verify your email address with this link:",
                verify_link,
            ],
        )
        return self._send_email(to_email, "Verify your email", html_body, text_body)

    async def send(self, sender: Callable[..., bool], *args: Any, **kwargs: Any) -> bool:
        """Run a blocking sender off the event loop and wait for the outcome."""
        return await asyncio.to_thread(sender, *args, **kwargs)

    def dispatch(self, job: Coroutine[Any, Any, Any], *, label: str) -> None:
        """Fire-and-forget a notification job; a failure is logged and otherwise ignored."""

        def _done(task: asyncio.Task) -> None:
            self._pending.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                logger.error(
                    "email_dispatch_failed", job=label, error=str(exc)
                )
            elif task.result() is False:
                logger.warning("email_dispatch_undelivered", job=label)

        task = asyncio.get_running_loop().create_task(job)
        self._pending.add(task)
        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for dispatched notifications, e.g. on shutdown."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
