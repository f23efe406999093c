"""
Outbound mail channel.

- build_message: compose a multipart mail with one attachment
- SESMailer: send through Amazon SES (send_raw_email)
- SMTPMailer: send through an SMTP relay (plain, STARTTLS or implicit TLS)

Both mailers expose send(recipient, subject, body, attachment_name, attachment)
and return the provider message id, raising MailDeliveryError on failure.
"""

from __future__ import annotations

import mimetypes
import os
import smtplib
import ssl
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .constants import DEFAULT_SENDER_NAME, EXTENSION_MIME_TYPES
from .logging import get_logger
from .retry import NO_RETRY, RetryPolicy, client_config, retry_call


class MailDeliveryError(RuntimeError):
    """The outbound channel refused or failed to take the message."""


def guess_content_type(filename: str) -> str:
    """Infer MIME type from filename."""
    name = os.path.basename(str(filename))
    ext = os.path.splitext(name)[1].lower()
    if ext in EXTENSION_MIME_TYPES:
        return EXTENSION_MIME_TYPES[ext]
    guessed, _ = mimetypes.guess_type(name)
    return guessed or "application/octet-stream"


def build_message(
    sender: str,
    sender_name: str,
    recipient: str,
    subject: str,
    body: str,
    attachment_name: str,
    attachment: bytes,
) -> MIMEMultipart:
    """Compose the mail: text part plus one attachment."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = subject
    msg["From"] = formataddr((sender_name, sender)) if sender_name else sender
    msg["To"] = recipient
    msg["Message-ID"] = make_msgid(domain=sender.rpartition("@")[2] or None)

    msg.attach(MIMEText(body, "plain", "utf-8"))

    maintype, _, subtype = guess_content_type(attachment_name).partition("/")
    part = MIMEApplication(attachment, _subtype=subtype or "octet-stream")
    if maintype != "application":
        part.replace_header("Content-Type", f"{maintype}/{subtype}")
    part.add_header("Content-Disposition", "attachment", filename=attachment_name)
    msg.attach(part)
    return msg


class SESMailer:
    """Send mail through Amazon SES."""

    def __init__(
        self,
        sender: str,
        sender_name: str = DEFAULT_SENDER_NAME,
        ses_client=None,
        region: Optional[str] = None,
        retry_policy: RetryPolicy = NO_RETRY,
        logger=None,
    ):
        if not sender:
            raise ValueError("sender required")
        self.sender = sender
        self.sender_name = sender_name
        self._ses = ses_client
        self._region = region
        self.retry_policy = retry_policy
        self.logger = logger or get_logger("io_mail")

    @property
    def ses(self):
        """Lazy-load SES client."""
        if self._ses is None:
            self._ses = boto3.client("ses", region_name=self._region, config=client_config(read_timeout=30))
        return self._ses

    def send(self, recipient: str, subject: str, body: str, attachment_name: str, attachment: bytes) -> str:
        msg = build_message(self.sender, self.sender_name, recipient, subject, body, attachment_name, attachment)
        try:
            resp = retry_call(
                self.retry_policy,
                self.ses.send_raw_email,
                # Recipients come from the To header
                Source=self.sender,
                RawMessage={"Data": msg.as_bytes()},
                operation="ses.send_raw_email",
                logger=self.logger,
            )
        except (ClientError, BotoCoreError) as e:
            raise MailDeliveryError(f"SES error: {e}") from e

        message_id = resp.get("MessageId", "")
        self.logger.info("Mail sent", {"recipient": recipient, "provider_id": message_id})
        return message_id


class SMTPMailer:
    """Send mail through an SMTP relay."""

    def __init__(
        self,
        host: str,
        sender: str,
        port: int = 587,
        sender_name: str = DEFAULT_SENDER_NAME,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        use_ssl: bool = False,
        timeout: float = 30.0,
        logger=None,
    ):
        if not host:
            raise ValueError("host required")
        if not sender:
            raise ValueError("sender required")
        self.host = host
        self.port = port
        self.sender = sender
        self.sender_name = sender_name
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.use_ssl = use_ssl
        self.timeout = timeout
        self.logger = logger or get_logger("io_mail")

    def send(self, recipient: str, subject: str, body: str, attachment_name: str, attachment: bytes) -> str:
        msg = build_message(self.sender, self.sender_name, recipient, subject, body, attachment_name, attachment)
        try:
            with self._connect() as server:
                if self.use_tls and not self.use_ssl:
                    server.starttls(context=ssl.create_default_context())
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.sendmail(self.sender, [recipient], msg.as_string())

        except smtplib.SMTPException as e:
            raise MailDeliveryError(f"SMTP error: {e}") from e
        except OSError as e:
            raise MailDeliveryError(f"Connection error: {e}") from e

        self.logger.info("Mail sent", {"recipient": recipient, "provider_id": msg["Message-ID"]})
        return msg["Message-ID"]

    def _connect(self) -> smtplib.SMTP:
        if self.use_ssl:
            # Implicit TLS (port 465)
            return smtplib.SMTP_SSL(
                self.host, self.port, timeout=self.timeout, context=ssl.create_default_context()
            )
        return smtplib.SMTP(self.host, self.port, timeout=self.timeout)


__all__ = ["MailDeliveryError", "SESMailer", "SMTPMailer", "build_message", "guess_content_type"]
