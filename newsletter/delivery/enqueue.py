from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from newsletter.core.errors import InvalidSubscriberEmail, StorageError
from newsletter.db.repositories import (
    IssueDeliveryTaskRepository,
    NewsletterIssueRepository,
    SubscriptionRepository,
)
from newsletter.domain.subscriber_email import SubscriberEmail

logger = logging.getLogger(__name__)


def publish_issue(db: Session, title: str, html_content: str, text_content: str) -> UUID:
    """Record a new issue and queue one delivery per confirmed subscriber.

    Runs inside the idempotency owner's transaction and never commits: the
    issue and its queue rows become visible together with the claimed key.
    Confirmed subscribers whose stored address no longer parses are skipped
    with a warning.  Store failures roll the whole claim back and surface as
    ``StorageError``.
    """
    try:
        issue_id = _record_issue(db, title, html_content, text_content)
    except SQLAlchemyError as exc:
        db.rollback()
        raise StorageError("Failed to publish newsletter issue") from exc
    return issue_id


def _record_issue(db: Session, title: str, html_content: str, text_content: str) -> UUID:
    issue = NewsletterIssueRepository(db).create(
        newsletter_issue_id=uuid4(),
        title=title,
        text_content=text_content,
        html_content=html_content,
        published_at=datetime.now(timezone.utc),
    )

    recipients: list[SubscriberEmail] = []
    for subscriber in SubscriptionRepository(db).list_confirmed():
        if isinstance(subscriber, InvalidSubscriberEmail):
            logger.warning("Skipping a confirmed subscriber with invalid stored contact details: %s", subscriber)
            continue
        recipients.append(subscriber)

    enqueued = IssueDeliveryTaskRepository(db).enqueue(issue.newsletter_issue_id, recipients)
    logger.info("Issue %s published; %d deliveries queued", issue.newsletter_issue_id, enqueued)
    return issue.newsletter_issue_id
