"""Outbound notification transports.

``Notifier`` is the capability the engine depends on. ``SmtpNotifier`` sends
plain-text email; ``LoggingNotifier`` only logs and is used when SMTP is not
configured (development, tests).

Every method raises ``NotifierUnavailable`` for retryable transport failures
and ``InvalidRecipient`` when the address is rejected outright.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from datetime import datetime
from email.mime.text import MIMEText
from typing import Any, Protocol

from courier.config import Settings
from courier.errors import InvalidRecipient, NotifierUnavailable
from courier.services.content_store import ResolvedContent

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send_check_in_prompt(
        self, owner_id: str, owner_email: str, due_at: datetime, token: str
    ) -> None: ...

    async def send_verification_request(
        self, contact_email: str, token: str, expires_at: datetime, purpose: str
    ) -> None: ...

    async def send_delivery_notice(
        self, recipient_email: str, content: ResolvedContent, message_meta: dict[str, Any]
    ) -> None: ...

    async def send_contact_invitation(
        self, contact_email: str, owner_id: str, token: str
    ) -> None: ...


def compose_check_in_prompt(due_at: datetime, link: str) -> tuple[str, str]:
    subject = f"Please check in before {due_at:%Y-%m-%d %H:%M} UTC"
    body = (
        "This is your scheduled check-in.\n\n"
        f"Please confirm you are well before {due_at:%Y-%m-%d %H:%M} UTC:\n"
        f"{link}\n\n"
        "If you miss it, your trusted contacts will be asked to confirm "
        "your status."
    )
    return subject, body


def compose_verification_request(
    purpose: str, expires_at: datetime, link: str
) -> tuple[str, str]:
    subject = f"Verification requested: {purpose}"
    body = (
        "You are listed as a trusted contact and your confirmation is needed.\n\n"
        f"Question: {purpose}\n\n"
        f"Please confirm or deny before {expires_at:%Y-%m-%d %H:%M} UTC:\n"
        f"{link}\n\n"
        "This link can only be used once."
    )
    return subject, body


def compose_delivery_notice(
    content: ResolvedContent, message_meta: dict[str, Any]
) -> tuple[str, str]:
    sender = message_meta.get("sender") or "Someone who cares about you"
    title = message_meta.get("title") or "A message for you"
    recipient_name = message_meta.get("recipient_name") or "there"
    subject = f"{title}"
    lines = [
        f"Hello {recipient_name},",
        "",
        f"{sender} left a {message_meta.get('message_type', 'message')} "
        "to be delivered to you at this time.",
        "",
    ]
    if content.url:
        lines.append(f"You can open it here: {content.url}")
    elif content.data is not None:
        try:
            lines.append(content.data.decode("utf-8"))
        except UnicodeDecodeError:
            lines.append(f"The message is attached as content {content.ref}.")
    return subject, "\n".join(lines)


def compose_contact_invitation(owner_id: str, link: str) -> tuple[str, str]:
    subject = "You have been named a trusted contact"
    body = (
        f"Owner {owner_id} has named you as a trusted contact.\n\n"
        "Trusted contacts may be asked to confirm important life events.\n"
        f"Accept or decline here: {link}"
    )
    return subject, body


class SmtpNotifier:
    """Plain-text email over SMTP with STARTTLS."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._base_url = settings.public_base_url.rstrip("/")

    async def send_check_in_prompt(
        self, owner_id: str, owner_email: str, due_at: datetime, token: str
    ) -> None:
        subject, body = compose_check_in_prompt(
            due_at, f"{self._base_url}/check-in?token={token}"
        )
        await self._send(owner_email, subject, body)

    async def send_verification_request(
        self, contact_email: str, token: str, expires_at: datetime, purpose: str
    ) -> None:
        subject, body = compose_verification_request(
            purpose, expires_at, f"{self._base_url}/verify?token={token}"
        )
        await self._send(contact_email, subject, body)

    async def send_delivery_notice(
        self, recipient_email: str, content: ResolvedContent, message_meta: dict[str, Any]
    ) -> None:
        subject, body = compose_delivery_notice(content, message_meta)
        await self._send(recipient_email, subject, body)

    async def send_contact_invitation(
        self, contact_email: str, owner_id: str, token: str
    ) -> None:
        subject, body = compose_contact_invitation(
            owner_id, f"{self._base_url}/invitation?token={token}"
        )
        await self._send(contact_email, subject, body)

    async def _send(self, to: str, subject: str, body: str) -> None:
        if not to or "@" not in to:
            raise InvalidRecipient(f"Invalid recipient address: {to!r}")
        await asyncio.to_thread(self._send_sync, to, subject, body)

    def _send_sync(self, to: str, subject: str, body: str) -> None:
        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = self._settings.smtp_from or self._settings.smtp_user
        msg["To"] = to

        try:
            with smtplib.SMTP(
                self._settings.smtp_host,
                self._settings.smtp_port,
                timeout=self._settings.io_timeout_seconds,
            ) as server:
                server.starttls()
                if self._settings.smtp_user:
                    server.login(self._settings.smtp_user, self._settings.smtp_password)
                server.send_message(msg)
        except smtplib.SMTPRecipientsRefused as exc:
            raise InvalidRecipient(f"Recipient refused: {to}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise NotifierUnavailable(f"SMTP delivery to {to} failed: {exc}") from exc

        logger.info("Email sent to %s: %s", to, subject)


class LoggingNotifier:
    """Records notifications in the log instead of sending them."""

    async def send_check_in_prompt(
        self, owner_id: str, owner_email: str, due_at: datetime, token: str
    ) -> None:
        logger.info("Check-in prompt for owner %s (due %s)", owner_id, due_at.isoformat())

    async def send_verification_request(
        self, contact_email: str, token: str, expires_at: datetime, purpose: str
    ) -> None:
        logger.info(
            "Verification request to %s: %s (expires %s)",
            contact_email,
            purpose,
            expires_at.isoformat(),
        )

    async def send_delivery_notice(
        self, recipient_email: str, content: ResolvedContent, message_meta: dict[str, Any]
    ) -> None:
        logger.info(
            "Delivery notice to %s for message %s",
            recipient_email,
            message_meta.get("message_id"),
        )

    async def send_contact_invitation(
        self, contact_email: str, owner_id: str, token: str
    ) -> None:
        logger.info("Trusted-contact invitation to %s from owner %s", contact_email, owner_id)


def build_notifier(settings: Settings) -> Notifier:
    """Pick the transport for the current configuration."""
    if settings.smtp_host:
        return SmtpNotifier(settings)
    logger.warning("SMTP not configured, notifications will only be logged")
    return LoggingNotifier()
