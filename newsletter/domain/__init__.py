"""Validated domain values: subscriber email addresses."""
from newsletter.domain.subscriber_email import SubscriberEmail, mask_email

__all__ = ["SubscriberEmail", "mask_email"]
