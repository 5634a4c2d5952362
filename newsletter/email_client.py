"""Outbound email transports.

``EmailSender`` is the capability the delivery worker depends on: one call
sends one email and raises a ``DeliveryError`` subclass on failure.  Neither
implementation retries; the queue row is the retry mechanism.

* ``HttpEmailClient`` posts to a Postmark-style JSON API using ``httpx``.
* ``SmtpEmailSender`` hands a multipart message to an SMTP relay.

Safety: recipients are only ever logged masked.
"""
from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

import httpx
from pydantic import SecretStr

from newsletter.core.errors import PermanentDeliveryError, TransientDeliveryError
from newsletter.core.settings import Settings
from newsletter.domain.subscriber_email import SubscriberEmail, mask_email

logger = logging.getLogger(__name__)

AUTHORIZATION_HEADER = "X-Postmark-Server-Token"


class EmailSender(Protocol):
    def send_email(
        self,
        recipient: SubscriberEmail,
        subject: str,
        html_content: str,
        text_content: str,
    ) -> None:
        ...

    def close(self) -> None:
        ...


# ---------------------------------------------------------------------------
# HTTP API
# ---------------------------------------------------------------------------


class HttpEmailClient:
    """Send through a REST email provider (``POST {base_url}/email``)."""

    def __init__(
        self,
        base_url: str,
        sender: SubscriberEmail,
        authorization_token: SecretStr,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.sender = sender
        self._authorization_token = authorization_token
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    def send_email(
        self,
        recipient: SubscriberEmail,
        subject: str,
        html_content: str,
        text_content: str,
    ) -> None:
        payload = {
            "From": self.sender.value,
            "To": recipient.value,
            "Subject": subject,
            "HtmlBody": html_content,
            "TextBody": text_content,
        }
        try:
            response = self._client.post(
                "/email",
                json=payload,
                headers={AUTHORIZATION_HEADER: self._authorization_token.get_secret_value()},
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise TransientDeliveryError(
                f"Timed out sending email to {mask_email(recipient.value)}"
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise TransientDeliveryError(
                f"Email provider answered {exc.response.status_code} for {mask_email(recipient.value)}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientDeliveryError(
                f"Failed to reach email provider for {mask_email(recipient.value)}: {exc}"
            ) from exc
        logger.debug("Email provider accepted message for %s", mask_email(recipient.value))

    def close(self) -> None:
        self._client.close()


# ---------------------------------------------------------------------------
# SMTP relay
# ---------------------------------------------------------------------------


class SmtpEmailSender:
    """Send via an SMTP relay; refused recipients are permanent failures."""

    def __init__(self, smtp_host: str, sender: SubscriberEmail, smtp_port: int = 25) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.sender = sender

    def send_email(
        self,
        recipient: SubscriberEmail,
        subject: str,
        html_content: str,
        text_content: str,
    ) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.sender.value
        msg["To"] = recipient.value
        msg.attach(MIMEText(text_content, "plain"))
        msg.attach(MIMEText(html_content, "html"))

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port) as server:
                server.sendmail(self.sender.value, [recipient.value], msg.as_string())
        except smtplib.SMTPRecipientsRefused as exc:
            raise PermanentDeliveryError(
                f"SMTP relay refused recipient {mask_email(recipient.value)}"
            ) from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise TransientDeliveryError(
                f"SMTP error sending to {mask_email(recipient.value)}: {exc}"
            ) from exc

    def close(self) -> None:
        """Nothing to release; every send opens its own connection."""


def build_email_sender(settings: Settings) -> EmailSender:
    """Return the transport selected by ``EMAIL_TRANSPORT``."""
    sender = SubscriberEmail.parse(settings.email_sender)
    if settings.email_transport == "smtp":
        return SmtpEmailSender(settings.smtp_host, sender, smtp_port=settings.smtp_port)
    if settings.email_transport == "http":
        return HttpEmailClient(
            settings.email_base_url,
            sender,
            settings.email_authorization_token,
            timeout=settings.email_timeout_milliseconds / 1000,
        )
    raise ValueError(f"Unknown EMAIL_TRANSPORT {settings.email_transport!r}; must be 'http' or 'smtp'")
