"""Tests for notification composition and the SMTP transport."""
from __future__ import annotations

import smtplib
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from courier.config import Settings
from courier.errors import InvalidRecipient, NotifierUnavailable
from courier.services.content_store import ResolvedContent
from courier.services.notifier import (
    LoggingNotifier,
    SmtpNotifier,
    build_notifier,
    compose_check_in_prompt,
    compose_delivery_notice,
    compose_verification_request,
)

DUE = datetime(2030, 2, 1, 12, 0)


def _settings(**overrides) -> Settings:
    values = {
        "smtp_host": "mail.example.com",
        "smtp_user": "courier@example.com",
        "smtp_password": "secret",
        "public_base_url": "https://courier.example.com/",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestCompose:
    def test_check_in_prompt_mentions_deadline(self):
        subject, body = compose_check_in_prompt(DUE, "https://x/check-in?token=t")
        assert "2030-02-01 12:00" in subject
        assert "https://x/check-in?token=t" in body

    def test_verification_request(self):
        subject, body = compose_verification_request("Has it happened?", DUE, "link")
        assert "Has it happened?" in subject
        assert "only be used once" in body

    def test_delivery_notice_inlines_text(self):
        content = ResolvedContent(ref="r", data="Hej då".encode("utf-8"))
        subject, body = compose_delivery_notice(
            content, {"title": "For your wedding", "recipient_name": "Sam"}
        )
        assert subject == "For your wedding"
        assert body.startswith("Hello Sam,")
        assert "Hej då" in body

    def test_delivery_notice_links_remote_content(self):
        content = ResolvedContent(ref="r", url="https://blobs/r")
        _, body = compose_delivery_notice(content, {})
        assert "https://blobs/r" in body

    def test_delivery_notice_binary_content(self):
        content = ResolvedContent(ref="r", data=b"\xff\xfe\x00")
        _, body = compose_delivery_notice(content, {})
        assert "attached as content r" in body


class TestBuildNotifier:
    def test_smtp_when_configured(self):
        assert isinstance(build_notifier(_settings()), SmtpNotifier)

    def test_logging_fallback(self):
        assert isinstance(build_notifier(_settings(smtp_host="")), LoggingNotifier)


class TestSmtpNotifier:
    @pytest.mark.asyncio
    async def test_sends_with_starttls_and_login(self):
        notifier = SmtpNotifier(_settings())
        with patch("smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value.__enter__.return_value
            await notifier.send_check_in_prompt("owner-1", "owner@example.com", DUE, "tok")

        smtp_cls.assert_called_once_with("mail.example.com", 587, timeout=30.0)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("courier@example.com", "secret")
        sent = server.send_message.call_args.args[0]
        assert sent["To"] == "owner@example.com"
        assert "https://courier.example.com/check-in?token=tok" in sent.get_payload()

    @pytest.mark.asyncio
    async def test_invalid_address_never_connects(self):
        notifier = SmtpNotifier(_settings())
        with patch("smtplib.SMTP") as smtp_cls:
            with pytest.raises(InvalidRecipient):
                await notifier.send_contact_invitation("not-an-address", "owner-1", "tok")
        smtp_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_refused_recipient(self):
        notifier = SmtpNotifier(_settings())
        with patch("smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value.__enter__.return_value
            server.send_message.side_effect = smtplib.SMTPRecipientsRefused(
                {"x@example.com": (550, b"no such user")}
            )
            with pytest.raises(InvalidRecipient):
                await notifier.send_verification_request(
                    "x@example.com", "tok", DUE, "Has it happened?"
                )

    @pytest.mark.asyncio
    async def test_connection_failure_is_transient(self):
        notifier = SmtpNotifier(_settings())
        with patch("smtplib.SMTP", MagicMock(side_effect=OSError("connection refused"))):
            with pytest.raises(NotifierUnavailable):
                await notifier.send_delivery_notice(
                    "r@example.com", ResolvedContent(ref="r", data=b"hi"), {}
                )
