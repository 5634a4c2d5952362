from __future__ import annotations

import logging
from collections.abc import Collection
from datetime import datetime
from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy import and_, delete, func, not_, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from newsletter.core.errors import InvalidSubscriberEmail, StorageError
from newsletter.db import models
from newsletter.domain.subscriber_email import SubscriberEmail

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    model: type[ModelT]

    def __init__(self, db: Session):
        self.db = db

    def create(self, **kwargs) -> ModelT:
        entity = self.model(**kwargs)
        self.db.add(entity)
        self.db.flush()
        return entity

    def count(self) -> int:
        return self.db.execute(select(func.count()).select_from(self.model)).scalar_one()


def insert_for(db: Session, model):
    """Return a dialect-specific ``INSERT`` supporting ``ON CONFLICT DO NOTHING``."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise StorageError(f"Conditional insert is not supported on dialect {dialect!r}")


class SubscriptionRepository(BaseRepository[models.Subscription]):
    model = models.Subscription

    def list_confirmed(self) -> list[SubscriberEmail | InvalidSubscriberEmail]:
        """Return every confirmed subscriber as a parsed address or its parse failure."""
        stmt = select(models.Subscription.email).where(
            models.Subscription.status == models.SUBSCRIPTION_STATUS_CONFIRMED
        )
        results: list[SubscriberEmail | InvalidSubscriberEmail] = []
        for email in self.db.execute(stmt).scalars():
            try:
                results.append(SubscriberEmail.parse(email))
            except InvalidSubscriberEmail as exc:
                results.append(exc)
        return results


class IdempotencyRecordRepository(BaseRepository[models.IdempotencyRecord]):
    model = models.IdempotencyRecord

    def insert_if_absent(self, user_id: UUID, key: str, created_at: datetime) -> bool:
        """Insert a claim row; ``True`` when this call inserted it."""
        stmt = (
            insert_for(self.db, models.IdempotencyRecord)
            .values(user_id=user_id, idempotency_key=key, created_at=created_at)
            .on_conflict_do_nothing()
        )
        return self.db.execute(stmt).rowcount > 0

    def get_for_update(self, user_id: UUID, key: str) -> models.IdempotencyRecord | None:
        stmt = (
            select(models.IdempotencyRecord)
            .where(
                models.IdempotencyRecord.user_id == user_id,
                models.IdempotencyRecord.idempotency_key == key,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def touch(self, user_id: UUID, key: str, created_at: datetime) -> None:
        self.db.execute(
            update(models.IdempotencyRecord)
            .where(
                models.IdempotencyRecord.user_id == user_id,
                models.IdempotencyRecord.idempotency_key == key,
            )
            .values(created_at=created_at)
        )

    def attach_response(
        self,
        user_id: UUID,
        key: str,
        status_code: int,
        headers: list[dict[str, str]],
        body: bytes,
    ) -> int:
        result = self.db.execute(
            update(models.IdempotencyRecord)
            .where(
                models.IdempotencyRecord.user_id == user_id,
                models.IdempotencyRecord.idempotency_key == key,
            )
            .values(
                response_status_code=status_code,
                response_headers=headers,
                response_body=body,
            )
        )
        return result.rowcount


class NewsletterIssueRepository(BaseRepository[models.NewsletterIssue]):
    model = models.NewsletterIssue


class IssueDeliveryTaskRepository(BaseRepository[models.IssueDeliveryTask]):
    model = models.IssueDeliveryTask

    def enqueue(self, newsletter_issue_id: UUID, recipients: list[SubscriberEmail]) -> int:
        """Bulk-insert one queue row per recipient; return the number inserted."""
        addresses = list(dict.fromkeys(recipient.value for recipient in recipients))
        if not addresses:
            return 0
        rows = [
            {"newsletter_issue_id": newsletter_issue_id, "subscriber_email": address}
            for address in addresses
        ]
        self.db.execute(
            insert_for(self.db, models.IssueDeliveryTask).on_conflict_do_nothing(),
            rows,
        )
        return len(rows)

    def dequeue_locked(
        self,
        exclude: Collection[tuple[UUID, str]] = (),
    ) -> tuple[models.IssueDeliveryTask, models.NewsletterIssue] | None:
        """Lock one pending task and load its issue, skipping rows locked by others.

        Rows whose ``(newsletter_issue_id, subscriber_email)`` is in *exclude*
        are not considered.
        """
        stmt = (
            select(models.IssueDeliveryTask, models.NewsletterIssue)
            .join(
                models.NewsletterIssue,
                models.NewsletterIssue.newsletter_issue_id == models.IssueDeliveryTask.newsletter_issue_id,
            )
            .limit(1)
            .with_for_update(skip_locked=True, of=models.IssueDeliveryTask)
        )
        if exclude:
            stmt = stmt.where(
                not_(
                    or_(
                        *(
                            and_(
                                models.IssueDeliveryTask.newsletter_issue_id == issue_id,
                                models.IssueDeliveryTask.subscriber_email == email,
                            )
                            for issue_id, email in exclude
                        )
                    )
                )
            )
        row = self.db.execute(stmt).first()
        if row is None:
            return None
        return row[0], row[1]

    def remove(self, newsletter_issue_id: UUID, subscriber_email: str) -> None:
        self.db.execute(
            delete(models.IssueDeliveryTask).where(
                models.IssueDeliveryTask.newsletter_issue_id == newsletter_issue_id,
                models.IssueDeliveryTask.subscriber_email == subscriber_email,
            )
        )

    def pending_for_issue(self, newsletter_issue_id: UUID) -> list[str]:
        stmt = (
            select(models.IssueDeliveryTask.subscriber_email)
            .where(models.IssueDeliveryTask.newsletter_issue_id == newsletter_issue_id)
            .order_by(models.IssueDeliveryTask.subscriber_email)
        )
        return list(self.db.execute(stmt).scalars().all())
