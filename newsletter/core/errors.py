"""Error taxonomy shared by the gateway, the enqueuer and the delivery worker.

``ValidationError`` is raised before any store access.  ``StorageError``
wraps every SQLAlchemy failure; the session that raised it has already been
rolled back.  ``DeliveryError`` never escapes a single worker iteration.
"""
from __future__ import annotations


class NewsletterError(Exception):
    """Root of every error raised by this package."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(NewsletterError, ValueError):
    """Malformed input rejected before touching the store."""


class InvalidIdempotencyKey(ValidationError):
    """Raised when an idempotency key is empty, too long, or has unsafe characters."""


class InvalidSubscriberEmail(ValidationError):
    """Raised when a stored or submitted subscriber address is not a valid email."""


# ---------------------------------------------------------------------------
# Idempotency
# ---------------------------------------------------------------------------


class ConflictInProgress(NewsletterError):
    """Another submission owns the key but has not stored its response yet."""

    def __init__(self, message: str, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StorageError(NewsletterError):
    """A database operation failed; the owning transaction was rolled back."""


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


class DeliveryError(NewsletterError):
    """Sending one email to one recipient failed."""


class TransientDeliveryError(DeliveryError):
    """Retryable failure: network error, timeout, non-2xx from the provider."""


class PermanentDeliveryError(DeliveryError):
    """Failure that retrying cannot fix, e.g. a recipient the provider refuses."""
