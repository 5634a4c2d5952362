from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, ForeignKey, LargeBinary, SmallInteger, String, Text, func, text as sql_text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from newsletter.db.base import Base

SUBSCRIPTION_STATUS_PENDING = "pending_confirmation"
SUBSCRIPTION_STATUS_CONFIRMED = "confirmed"


class Subscription(Base):
    """Subscriber list; written by the signup flow, read-only here."""

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    subscribed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        index=True,
        default=SUBSCRIPTION_STATUS_PENDING,
        server_default=sql_text(f"'{SUBSCRIPTION_STATUS_PENDING}'"),
    )


class IdempotencyRecord(Base):
    """Claim marker and replay log for one ``(user_id, idempotency_key)`` pair.

    The response columns stay NULL until the owning transaction attaches the
    reply it returned; the row is never deleted.
    """

    __tablename__ = "idempotency"

    user_id: Mapped[UUID] = mapped_column(primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(Text, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    response_status_code: Mapped[int | None] = mapped_column(SmallInteger, nullable=True)
    response_headers: Mapped[list | None] = mapped_column(JSON, nullable=True)
    response_body: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)


class NewsletterIssue(Base):
    __tablename__ = "newsletter_issues"

    newsletter_issue_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    text_content: Mapped[str] = mapped_column(Text, nullable=False)
    html_content: Mapped[str] = mapped_column(Text, nullable=False)
    published_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    delivery_tasks: Mapped[list[IssueDeliveryTask]] = relationship(back_populates="issue")


class IssueDeliveryTask(Base):
    """One pending delivery of an issue to one recipient.

    Row presence is the work-remaining signal: rows are deleted after a
    successful (or permanently failed) send and are never updated.
    """

    __tablename__ = "issue_delivery_queue"

    newsletter_issue_id: Mapped[UUID] = mapped_column(
        ForeignKey("newsletter_issues.newsletter_issue_id"), primary_key=True
    )
    subscriber_email: Mapped[str] = mapped_column(Text, primary_key=True)

    issue: Mapped[NewsletterIssue] = relationship(back_populates="delivery_tasks")
