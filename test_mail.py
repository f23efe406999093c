"""
Tests for the outbound mail channel.

Covers:
- Message composition (subject, sender, one named attachment)
- SES delivery through moto, including an unverified sender
- SMTP delivery with smtplib mocked (plain, STARTTLS, implicit TLS, auth, errors)
"""

from __future__ import annotations

import email
import smtplib
from unittest.mock import MagicMock, patch

import pytest

from artifact_mailer.io_mail import (
    MailDeliveryError,
    SESMailer,
    SMTPMailer,
    build_message,
    guess_content_type,
)
from conftest import REGION, SENDER

# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


class TestBuildMessage:
    def _attachments(self, raw: bytes):
        parsed = email.message_from_bytes(raw)
        return parsed, [p for p in parsed.walk() if p.get_filename()]

    def test_headers_and_single_attachment(self) -> None:
        msg = build_message(
            SENDER, "Artifact Mailer", "alice@example.com",
            "Your processing results", "Please find your results attached.",
            "result.txt", b"hello\n",
        )
        parsed, attachments = self._attachments(msg.as_bytes())

        assert parsed["Subject"] == "Your processing results"
        assert parsed["To"] == "alice@example.com"
        assert SENDER in parsed["From"]
        assert "Artifact Mailer" in parsed["From"]
        assert parsed["Message-ID"].endswith("@example.com>")

        assert len(attachments) == 1
        assert attachments[0].get_filename() == "result.txt"
        assert attachments[0].get_content_type() == "text/plain"
        assert attachments[0].get_payload(decode=True) == b"hello\n"

    def test_body_text_part(self) -> None:
        msg = build_message(SENDER, "", "bob@example.com", "s", "see attached", "out.bin", b"\x00\x01")
        parsed = email.message_from_bytes(msg.as_bytes())
        texts = [p for p in parsed.walk() if p.get_content_type() == "text/plain" and not p.get_filename()]
        assert texts[0].get_payload(decode=True).decode("utf-8") == "see attached"
        assert parsed["From"] == SENDER

    def test_binary_attachment_preserved(self) -> None:
        payload = bytes(range(256))
        msg = build_message(SENDER, "", "bob@example.com", "s", "b", "data.bin", payload)
        _, attachments = self._attachments(msg.as_bytes())
        assert attachments[0].get_content_type() == "application/octet-stream"
        assert attachments[0].get_payload(decode=True) == payload

    @pytest.mark.parametrize("name,expected", [
        ("result.txt", "text/plain"),
        ("report.csv", "text/csv"),
        ("doc.pdf", "application/pdf"),
        ("noext", "application/octet-stream"),
    ])
    def test_guess_content_type(self, name: str, expected: str) -> None:
        assert guess_content_type(name) == expected


# ---------------------------------------------------------------------------
# SES (moto)
# ---------------------------------------------------------------------------


class TestSESMailer:
    def test_send_returns_message_id(self, ses) -> None:
        mailer = SESMailer(SENDER, ses_client=ses)
        message_id = mailer.send("alice@example.com", "s", "b", "result.txt", b"data")

        assert message_id
        assert ses.get_send_quota()["SentLast24Hours"] == 1

    def test_recipient_only_in_to_header(self) -> None:
        ses = MagicMock()
        ses.send_raw_email.return_value = {"MessageId": "ses-1"}
        mailer = SESMailer(SENDER, ses_client=ses)

        assert mailer.send("alice@example.com", "s", "b", "result.txt", b"data") == "ses-1"

        kwargs = ses.send_raw_email.call_args.kwargs
        assert "Destinations" not in kwargs
        assert kwargs["Source"] == SENDER
        raw = email.message_from_bytes(kwargs["RawMessage"]["Data"])
        assert raw.get_all("To") == ["alice@example.com"]

    def test_unverified_sender_raises_delivery_error(self, ses) -> None:
        mailer = SESMailer("stranger@unverified.example", ses_client=ses)
        with pytest.raises(MailDeliveryError, match="SES error"):
            mailer.send("alice@example.com", "s", "b", "result.txt", b"data")

    def test_sender_required(self) -> None:
        with pytest.raises(ValueError):
            SESMailer("", region=REGION)


# ---------------------------------------------------------------------------
# SMTP (smtplib mocked)
# ---------------------------------------------------------------------------


def _smtp_session() -> MagicMock:
    """Mock SMTP connection usable as a context manager that does not swallow errors."""
    session = MagicMock()
    session.__enter__.return_value = session
    session.__exit__.return_value = False
    return session


class TestSMTPMailer:
    @patch("artifact_mailer.io_mail.smtplib.SMTP")
    def test_plain_smtp(self, mock_smtp_class: MagicMock) -> None:
        mock_smtp = _smtp_session()
        mock_smtp_class.return_value = mock_smtp
        mailer = SMTPMailer("localhost", SENDER, port=1025, use_tls=False)

        message_id = mailer.send("alice@example.com", "s", "b", "result.txt", b"data")

        mock_smtp_class.assert_called_once_with("localhost", 1025, timeout=30.0)
        mock_smtp.starttls.assert_not_called()
        mock_smtp.login.assert_not_called()
        mock_smtp.sendmail.assert_called_once()
        from_addr, to_addrs, _ = mock_smtp.sendmail.call_args.args
        assert from_addr == SENDER
        assert to_addrs == ["alice@example.com"]
        mock_smtp.__exit__.assert_called_once()
        assert message_id.startswith("<")
        assert message_id.endswith("@example.com>")

    @patch("artifact_mailer.io_mail.smtplib.SMTP")
    def test_starttls_and_login(self, mock_smtp_class: MagicMock) -> None:
        mock_smtp = _smtp_session()
        mock_smtp_class.return_value = mock_smtp
        mailer = SMTPMailer("smtp.example.com", SENDER, username="user", password="secret")

        mailer.send("alice@example.com", "s", "b", "result.txt", b"data")

        mock_smtp.starttls.assert_called_once()
        mock_smtp.login.assert_called_once_with("user", "secret")

    @patch("artifact_mailer.io_mail.smtplib.SMTP")
    def test_starttls_failure_closes_connection(self, mock_smtp_class: MagicMock) -> None:
        mock_smtp = _smtp_session()
        mock_smtp.starttls.side_effect = smtplib.SMTPNotSupportedError("STARTTLS extension not supported")
        mock_smtp_class.return_value = mock_smtp
        mailer = SMTPMailer("smtp.example.com", SENDER)

        with pytest.raises(MailDeliveryError, match="SMTP error"):
            mailer.send("alice@example.com", "s", "b", "result.txt", b"data")

        mock_smtp.sendmail.assert_not_called()
        mock_smtp.__exit__.assert_called_once()

    @patch("artifact_mailer.io_mail.smtplib.SMTP_SSL")
    def test_implicit_tls(self, mock_smtp_ssl_class: MagicMock) -> None:
        mock_smtp = _smtp_session()
        mock_smtp_ssl_class.return_value = mock_smtp
        mailer = SMTPMailer("smtp.example.com", SENDER, port=465, use_ssl=True)

        mailer.send("alice@example.com", "s", "b", "result.txt", b"data")

        mock_smtp_ssl_class.assert_called_once()
        mock_smtp.starttls.assert_not_called()
        mock_smtp.sendmail.assert_called_once()

    @patch("artifact_mailer.io_mail.smtplib.SMTP")
    def test_smtp_error_raises_delivery_error(self, mock_smtp_class: MagicMock) -> None:
        mock_smtp = _smtp_session()
        mock_smtp.sendmail.side_effect = smtplib.SMTPException("Recipient refused")
        mock_smtp_class.return_value = mock_smtp
        mailer = SMTPMailer("localhost", SENDER, use_tls=False)

        with pytest.raises(MailDeliveryError, match="SMTP error"):
            mailer.send("alice@example.com", "s", "b", "result.txt", b"data")
        mock_smtp.__exit__.assert_called_once()

    @patch("artifact_mailer.io_mail.smtplib.SMTP")
    def test_connection_error_raises_delivery_error(self, mock_smtp_class: MagicMock) -> None:
        mock_smtp_class.side_effect = OSError("Network unreachable")
        mailer = SMTPMailer("localhost", SENDER, use_tls=False)

        with pytest.raises(MailDeliveryError, match="Connection error"):
            mailer.send("alice@example.com", "s", "b", "result.txt", b"data")

    def test_host_and_sender_required(self) -> None:
        with pytest.raises(ValueError):
            SMTPMailer("", SENDER)
        with pytest.raises(ValueError):
            SMTPMailer("localhost", "")
