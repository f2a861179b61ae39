from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from passgate.logging import get_logger, redact_email

logger = get_logger(__name__)

_PURPOSE_LABELS = {
    "login": "sign in",
    "register": "finish creating your account",
    "forget": "reset your password",
    "update": "change your password",
}


class MailDispatcher(Protocol):
    def send(
        self,
        recipient: str,
        subject: str,
        text_body: str,
        html_body: Optional[str] = None,
    ) -> bool: ...


class EmailService:
    """SMTP mail dispatcher for verification codes.

    Blocking by nature; callers on the event loop run ``send`` in a worker
    thread under a deadline. When no SMTP host is configured the message is
    logged instead of sent, which keeps local runs usable.
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
        from_name: str = "Passgate",
        timeout: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build_message(
        self, recipient: str, subject: str, text_body: str, html_body: Optional[str]
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = recipient
        msg.attach(MIMEText(text_body, "plain"))
        if html_body:
            msg.attach(MIMEText(html_body, "html"))
        return msg

    def send(
        self,
        recipient: str,
        subject: str,
        text_body: str,
        html_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message. Returns False on any SMTP failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(recipient),
                subject=subject,
            )
            return True

        msg = self._build_message(recipient, subject, text_body, html_body)
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, recipient, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, recipient, msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=redact_email(recipient),
                host=self.smtp_host,
                error=str(exc),
            )
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error(
                "email_recipient_refused",
                to=redact_email(recipient),
                error=str(exc),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            # OSError covers connection refusals and socket timeouts
            logger.error(
                "email_send_failed",
                to=redact_email(recipient),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=redact_email(recipient), subject=subject)
        return True


def render_verification_email(code: str, purpose: str, ttl_seconds: int) -> tuple[str, str, str]:
    """Return ``(subject, text_body, html_body)`` for a verification code."""
    action = _PURPOSE_LABELS.get(purpose, "continue")
    minutes = max(1, ttl_seconds // 60)
    # the code stays out of the subject, which is logged on every send
    subject = "Your verification code"
    text_body = (
        f"Use the code {code} to {action}.\n\n"
        f"It expires in {minutes} minutes. If you did not request it, ignore this email."
    )
    html_body = f"""
    <html>
    <body style="font-family: sans-serif; line-height: 1.5;">
        <p>Use the code below to {action}.</p>
        <p style="font-size: 28px; letter-spacing: 6px; font-weight: bold;">{code}</p>
        <p style="color: #666;">It expires in {minutes} minutes.
        If you did not request it, ignore this email.</p>
    </body>
    </html>
    """
    return subject, text_body, html_body
