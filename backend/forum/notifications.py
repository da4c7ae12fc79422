"""Transactional email for the forum.

`send_email` talks SMTP using the credentials from settings. `Notifier`
builds the account messages on top of it. Delivery is best effort: the
notifier logs failures and never raises, so a mail outage cannot undo a
registration or an update that already committed.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from .config import settings

logger = logging.getLogger("forum.mail")


@dataclass(frozen=True)
class Recipient:
    """Snapshot of the user fields a message needs.

    Messages are sent after the request's session is gone, so they must
    not hold on to ORM instances.
    """
    username: str
    email: str
    code: Optional[int] = None

    @classmethod
    def from_user(cls, user) -> "Recipient":
        return cls(username=user.username, email=user.email, code=user.activation_code)


def send_email(subject: str, to_email: str, html_body: str, text_body: str | None = None) -> bool:
    """Send one email over SMTP.

    Returns False without sending when SMTP is not configured. Transport
    errors propagate to the caller.
    """
    if not settings.smtp_configured:
        logger.info("smtp not configured; skipping email to %s (%s)", to_email, subject)
        return False
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = settings.SMTP_FROM
    msg["To"] = to_email
    msg.attach(MIMEText(text_body or html_body, "plain", "utf-8"))
    msg.attach(MIMEText(html_body, "html", "utf-8"))
    port = settings.SMTP_PORT or 465
    if port == 465:
        with smtplib.SMTP_SSL(settings.SMTP_HOST, port, context=ssl.create_default_context()) as server:
            server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
            server.sendmail(settings.SMTP_FROM, [to_email], msg.as_string())
    else:
        with smtplib.SMTP(settings.SMTP_HOST, port) as server:
            server.ehlo()
            server.starttls(context=ssl.create_default_context())
            server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
            server.sendmail(settings.SMTP_FROM, [to_email], msg.as_string())
    return True


class Notifier:
    """Account notifications; every method swallows and logs delivery errors."""

    def _deliver(self, kind: str, recipient: Recipient, subject: str, body: str) -> bool:
        html = f"<p>Hello {recipient.username},</p><p>{body}</p>"
        text = f"Hello {recipient.username},\n\n{body}\n"
        try:
            sent = send_email(subject, recipient.email, html, text)
        except (smtplib.SMTPException, OSError):
            logger.exception("email_failed kind=%s to=%s", kind, recipient.email)
            return False
        if sent:
            logger.info("email_sent kind=%s to=%s", kind, recipient.email)
        return sent

    def send_activation_message(self, recipient: Recipient) -> bool:
        return self._deliver(
            "activation", recipient, "Activate your forum account",
            f"Your activation code is {recipient.code}. It expires in "
            f"{settings.ACTIVATION_CODE_TTL_SECONDS // 60} minutes.",
        )

    def send_welcome_message(self, recipient: Recipient) -> bool:
        return self._deliver(
            "welcome", recipient, "Welcome to the forum",
            "Your account is active. You can log in now.",
        )

    def send_user_updated_message(self, recipient: Recipient) -> bool:
        return self._deliver(
            "updated", recipient, "Your account has been updated",
            "The details of your account were changed. If this wasn't you, contact an administrator.",
        )

    def send_user_removed_message(self, recipient: Recipient) -> bool:
        return self._deliver(
            "removed", recipient, "Your account has been removed",
            "Your forum account and its data were deleted.",
        )

    def send_new_password_message(self, recipient: Recipient) -> bool:
        return self._deliver(
            "new_password", recipient, "Reset your password",
            f"Use the code {recipient.code} to choose a new password. It expires in "
            f"{settings.PASSWORD_RESET_TTL_SECONDS // 60} minutes.",
        )


_default_notifier: Notifier | None = None


def get_notifier() -> Notifier:
    """FastAPI dependency returning the process-wide notifier."""
    global _default_notifier
    if _default_notifier is None:
        _default_notifier = Notifier()
    return _default_notifier
