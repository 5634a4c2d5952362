"""Subscriber email address value type.

Addresses in ``subscriptions`` were validated at signup, but the worker
re-parses them before every send: a row that no longer parses is a
permanent failure and is dropped from the queue instead of retried.

Safety rule: raw addresses are never logged, use :func:`mask_email`.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from email_validator import EmailNotValidError, validate_email

from newsletter.core.errors import InvalidSubscriberEmail

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriberEmail:
    """An email address that passed syntax validation."""

    value: str

    @classmethod
    def parse(cls, raw: str) -> SubscriberEmail:
        """Return a ``SubscriberEmail`` for *raw* or raise ``InvalidSubscriberEmail``.

        Deliverability (DNS) is not checked; only the address syntax.
        """
        candidate = (raw or "").strip()
        if not candidate:
            raise InvalidSubscriberEmail("subscriber email must be non-empty")
        try:
            validated = validate_email(candidate, check_deliverability=False)
        except EmailNotValidError as exc:
            logger.debug("Rejected subscriber email %s: %s", mask_email(candidate), exc)
            raise InvalidSubscriberEmail(
                f"{mask_email(candidate)} is not a valid subscriber email"
            ) from exc
        return cls(validated.normalized)

    def __str__(self) -> str:
        return self.value


def mask_email(raw: str) -> str:
    """Return *raw* with the local part masked, e.g. ``a***@example.com``.

    Used wherever a recipient has to appear in a log line.  Values without
    an ``@`` are fully masked.
    """
    local, sep, domain = (raw or "").partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"
