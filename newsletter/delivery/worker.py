"""Issue delivery worker.

Each call to :func:`try_execute_task` is one transaction around one queue
row: lock it (skipping rows other workers hold), send, then delete the row
or leave it for a later attempt.  Any number of workers can run against the
same database, in one process or many; the row locks are the only
coordination between them.

Outcomes per row:

* send succeeded → row deleted
* transient failure (network, timeout, non-2xx) → row kept, lock released
* permanent failure (unparseable stored address, refused recipient) → row
  deleted with a warning

Safety: recipients are logged masked, never raw.
"""
from __future__ import annotations

import enum
import logging
import threading
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from newsletter.core.errors import (
    DeliveryError,
    InvalidSubscriberEmail,
    PermanentDeliveryError,
    StorageError,
)
from newsletter.db.models import NewsletterIssue
from newsletter.db.repositories import IssueDeliveryTaskRepository
from newsletter.domain.subscriber_email import SubscriberEmail, mask_email
from newsletter.email_client import EmailSender

logger = logging.getLogger(__name__)


class ExecutionOutcome(str, enum.Enum):
    EMPTY_QUEUE = "empty_queue"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"


# ---------------------------------------------------------------------------
# One iteration
# ---------------------------------------------------------------------------


def try_execute_task(
    session_factory: sessionmaker[Session],
    email_client: EmailSender,
    skip: set[tuple[UUID, str]] | None = None,
) -> ExecutionOutcome:
    """Dequeue and settle at most one delivery task.

    Rows keyed in *skip* are passed over, and a row that fails transiently is
    added to it, so a caller holding one set across iterations reaches every
    other row before retrying a failed one.

    Raises ``StorageError`` when the database fails; the transaction is
    rolled back and the row, if any, stays queued.
    """
    with session_factory() as db:
        try:
            tasks = IssueDeliveryTaskRepository(db)
            dequeued = tasks.dequeue_locked(exclude=skip or ())
            if dequeued is None:
                db.commit()
                return ExecutionOutcome.EMPTY_QUEUE

            task, issue = dequeued
            issue_id = task.newsletter_issue_id
            address = task.subscriber_email
            outcome = _deliver(email_client, issue, address)
            if outcome is ExecutionOutcome.TASK_COMPLETED:
                tasks.remove(issue_id, address)
            elif skip is not None:
                skip.add((issue_id, address))
            db.commit()
            return outcome
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError("Failed to execute delivery task") from exc


def _deliver(email_client: EmailSender, issue: NewsletterIssue, address: str) -> ExecutionOutcome:
    masked = mask_email(address)
    try:
        recipient = SubscriberEmail.parse(address)
    except InvalidSubscriberEmail as exc:
        logger.warning(
            "Dropping delivery of issue %s to %s: stored address is invalid (%s)",
            issue.newsletter_issue_id,
            masked,
            exc,
        )
        return ExecutionOutcome.TASK_COMPLETED

    try:
        email_client.send_email(recipient, issue.title, issue.html_content, issue.text_content)
    except PermanentDeliveryError as exc:
        logger.warning(
            "Dropping delivery of issue %s to %s after a permanent failure: %s",
            issue.newsletter_issue_id,
            masked,
            exc,
        )
        return ExecutionOutcome.TASK_COMPLETED
    except DeliveryError as exc:
        logger.error(
            "Failed to deliver issue %s to %s; will retry: %s",
            issue.newsletter_issue_id,
            masked,
            exc,
        )
        return ExecutionOutcome.TASK_FAILED

    logger.info("Delivered issue %s to %s", issue.newsletter_issue_id, masked)
    return ExecutionOutcome.TASK_COMPLETED


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------


def run_worker_until_stopped(
    session_factory: sessionmaker[Session],
    email_client: EmailSender,
    stop_event: threading.Event,
    poll_interval: float = 10.0,
    failure_backoff: float = 1.0,
) -> None:
    """Drain the queue, sleep *poll_interval* when it is empty, until *stop_event* is set.

    Rows that fail are set aside for the rest of the pass, so one recipient
    that keeps failing cannot hold up the others.  A pass ends when no
    untried row is left; failed rows become eligible again in the next one.

    The event is only checked between iterations, so an in-flight send is
    always settled before the loop exits.
    """
    failed: set[tuple[UUID, str]] = set()
    while not stop_event.is_set():
        try:
            outcome = try_execute_task(session_factory, email_client, failed)
        except Exception:
            logger.exception("Delivery iteration failed; backing off")
            stop_event.wait(failure_backoff)
            continue

        if outcome is ExecutionOutcome.EMPTY_QUEUE:
            failed.clear()
            stop_event.wait(poll_interval)
        elif outcome is ExecutionOutcome.TASK_FAILED:
            stop_event.wait(failure_backoff)


def drain_queue(session_factory: sessionmaker[Session], email_client: EmailSender, max_attempts: int = 1000) -> int:
    """Try every queued row once; return how many rows were settled.

    Rows that fail stay queued for a later run.  Stops early after
    *max_attempts* iterations.
    """
    failed: set[tuple[UUID, str]] = set()
    completed = 0
    for _ in range(max_attempts):
        outcome = try_execute_task(session_factory, email_client, failed)
        if outcome is ExecutionOutcome.EMPTY_QUEUE:
            break
        if outcome is ExecutionOutcome.TASK_COMPLETED:
            completed += 1
    return completed


# ---------------------------------------------------------------------------
# Supervised worker
# ---------------------------------------------------------------------------


class DeliveryWorker:
    """A delivery loop on its own thread with an explicit start/stop lifecycle."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        email_client: EmailSender,
        poll_interval: float = 10.0,
        failure_backoff: float = 1.0,
        name: str = "delivery-worker",
    ) -> None:
        self.session_factory = session_factory
        self.email_client = email_client
        self.poll_interval = poll_interval
        self.failure_backoff = failure_backoff
        self.name = name
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            raise RuntimeError(f"{self.name} is already running")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info("%s started", self.name)

    def stop(self, timeout: float | None = None) -> None:
        """Signal the loop to exit and wait for the current iteration to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("%s did not stop within %s seconds", self.name, timeout)
            else:
                self._thread = None
        logger.info("%s stopped", self.name)

    def _run(self) -> None:
        run_worker_until_stopped(
            self.session_factory,
            self.email_client,
            self._stop_event,
            poll_interval=self.poll_interval,
            failure_backoff=self.failure_backoff,
        )
