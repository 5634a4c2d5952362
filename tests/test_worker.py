"""Tests for newsletter/delivery/worker.py.

The email provider is replaced by ``RecordingEmailSender`` from conftest.
"""
from __future__ import annotations

import threading
import time

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from newsletter.core.errors import StorageError
from newsletter.db.models import IssueDeliveryTask
from newsletter.delivery.enqueue import publish_issue
from newsletter.delivery.worker import (
    DeliveryWorker,
    ExecutionOutcome,
    drain_queue,
    run_worker_until_stopped,
    try_execute_task,
)


def _publish(session_factory, title: str = "Hello") -> None:
    with session_factory() as db:
        publish_issue(db, title, f"<p>{title}</p>", title)
        db.commit()


def _queued(session_factory) -> list[str]:
    with session_factory() as db:
        return sorted(db.execute(select(IssueDeliveryTask.subscriber_email)).scalars().all())


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# ===========================================================================
# try_execute_task
# ===========================================================================


class TestTryExecuteTask:
    def test_empty_queue(self, session_factory, email_sender):
        assert try_execute_task(session_factory, email_sender) is ExecutionOutcome.EMPTY_QUEUE
        assert email_sender.sent == []

    def test_success_sends_and_deletes_row(self, session_factory, add_subscriber, email_sender):
        add_subscriber("a@example.com")
        _publish(session_factory)

        outcome = try_execute_task(session_factory, email_sender)

        assert outcome is ExecutionOutcome.TASK_COMPLETED
        assert email_sender.sent == [("a@example.com", "Hello", "<p>Hello</p>", "Hello")]
        assert _queued(session_factory) == []

    def test_transient_failure_keeps_row(self, session_factory, add_subscriber, email_sender):
        add_subscriber("a@example.com")
        _publish(session_factory)
        email_sender.transient_failures.add("a@example.com")

        outcome = try_execute_task(session_factory, email_sender)

        assert outcome is ExecutionOutcome.TASK_FAILED
        assert email_sender.sent == []
        assert _queued(session_factory) == ["a@example.com"]

    def test_permanent_failure_drops_row(self, session_factory, add_subscriber, email_sender, caplog):
        add_subscriber("a@example.com")
        _publish(session_factory)
        email_sender.permanent_failures.add("a@example.com")

        outcome = try_execute_task(session_factory, email_sender)

        assert outcome is ExecutionOutcome.TASK_COMPLETED
        assert _queued(session_factory) == []
        assert "permanent failure" in caplog.text

    def test_invalid_stored_address_drops_row_without_sending(self, session_factory, email_sender, caplog):
        from datetime import datetime, timezone
        from uuid import uuid4

        from newsletter.db.models import NewsletterIssue

        with session_factory() as db:
            issue = NewsletterIssue(
                newsletter_issue_id=uuid4(),
                title="Hello",
                text_content="Hello",
                html_content="<p>Hello</p>",
                published_at=datetime.now(timezone.utc),
            )
            db.add(issue)
            db.flush()
            db.add(IssueDeliveryTask(newsletter_issue_id=issue.newsletter_issue_id, subscriber_email="garbage"))
            db.commit()

        outcome = try_execute_task(session_factory, email_sender)

        assert outcome is ExecutionOutcome.TASK_COMPLETED
        assert email_sender.sent == []
        assert _queued(session_factory) == []
        assert "stored address is invalid" in caplog.text

    def test_failure_log_masks_recipient(self, session_factory, add_subscriber, email_sender, caplog):
        add_subscriber("alice@example.com")
        _publish(session_factory)
        email_sender.transient_failures.add("alice@example.com")

        try_execute_task(session_factory, email_sender)

        assert "a***@example.com" in caplog.text
        assert "Failed to deliver issue" in caplog.text

    def test_store_failure_raises_storage_error_and_keeps_row(
        self, session_factory, add_subscriber, email_sender, monkeypatch
    ):
        from newsletter.db.repositories import IssueDeliveryTaskRepository

        add_subscriber("a@example.com")
        _publish(session_factory)

        def _boom(self, newsletter_issue_id, subscriber_email):
            raise OperationalError("DELETE", {}, Exception("connection lost"))

        monkeypatch.setattr(IssueDeliveryTaskRepository, "remove", _boom)

        with pytest.raises(StorageError):
            try_execute_task(session_factory, email_sender)
        assert _queued(session_factory) == ["a@example.com"]


# ===========================================================================
# Retries across recipients
# ===========================================================================


def test_failed_recipient_retried_without_redelivering_others(session_factory, add_subscriber, email_sender):
    add_subscriber("a@example.com")
    add_subscriber("b@example.com")
    _publish(session_factory)
    email_sender.fail_once.add("a@example.com")

    outcomes = [try_execute_task(session_factory, email_sender) for _ in range(3)]

    assert outcomes.count(ExecutionOutcome.TASK_FAILED) == 1
    assert outcomes.count(ExecutionOutcome.TASK_COMPLETED) == 2
    assert _queued(session_factory) == []

    assert sorted(email_sender.recipients()) == ["a@example.com", "b@example.com"]
    assert email_sender.recipients().count("a@example.com") == 1
    assert email_sender.recipients().count("b@example.com") == 1
    assert try_execute_task(session_factory, email_sender) is ExecutionOutcome.EMPTY_QUEUE


def test_recipient_that_keeps_failing_does_not_block_others(session_factory, add_subscriber, email_sender):
    add_subscriber("a@example.com")
    add_subscriber("b@example.com")
    add_subscriber("c@example.com")
    _publish(session_factory)
    email_sender.transient_failures.add("a@example.com")
    failed = set()

    outcomes = [try_execute_task(session_factory, email_sender, failed) for _ in range(4)]

    assert outcomes.count(ExecutionOutcome.TASK_FAILED) == 1
    assert outcomes.count(ExecutionOutcome.TASK_COMPLETED) == 2
    assert outcomes[-1] is ExecutionOutcome.EMPTY_QUEUE
    assert sorted(email_sender.recipients()) == ["b@example.com", "c@example.com"]
    assert email_sender.attempts.count("a@example.com") == 1
    assert [email for _, email in failed] == ["a@example.com"]
    assert _queued(session_factory) == ["a@example.com"]


def test_drain_queue_tries_a_failing_row_once(session_factory, add_subscriber, email_sender):
    add_subscriber("a@example.com")
    add_subscriber("b@example.com")
    _publish(session_factory)
    email_sender.transient_failures.add("a@example.com")

    assert drain_queue(session_factory, email_sender) == 1
    assert email_sender.recipients() == ["b@example.com"]
    assert email_sender.attempts.count("a@example.com") == 1
    assert _queued(session_factory) == ["a@example.com"]


def test_drain_queue_counts_settled_rows(session_factory, add_subscriber, email_sender):
    add_subscriber("a@example.com")
    add_subscriber("b@example.com")
    _publish(session_factory, "One")
    _publish(session_factory, "Two")

    assert drain_queue(session_factory, email_sender) == 4
    assert len(email_sender.sent) == 4


def test_drain_queue_stops_after_max_attempts(session_factory, add_subscriber, email_sender):
    for address in ["a@example.com", "b@example.com", "c@example.com"]:
        add_subscriber(address)
    _publish(session_factory)

    assert drain_queue(session_factory, email_sender, max_attempts=2) == 2
    assert len(email_sender.sent) == 2
    assert len(_queued(session_factory)) == 1


# ===========================================================================
# Loop and lifecycle
# ===========================================================================


class TestRunWorkerUntilStopped:
    def test_returns_immediately_when_already_stopped(self, session_factory, add_subscriber, email_sender):
        add_subscriber("a@example.com")
        _publish(session_factory)
        stop = threading.Event()
        stop.set()

        run_worker_until_stopped(session_factory, email_sender, stop, poll_interval=0.01)

        assert email_sender.sent == []

    def test_survives_storage_errors(self, session_factory, email_sender, monkeypatch):
        from newsletter.delivery import worker as worker_module

        stop = threading.Event()
        calls = []

        def _flaky(session_factory, email_client, skip=None):
            calls.append(1)
            if len(calls) >= 3:
                stop.set()
            raise StorageError("database unavailable")

        monkeypatch.setattr(worker_module, "try_execute_task", _flaky)

        run_worker_until_stopped(session_factory, email_sender, stop, poll_interval=0.01, failure_backoff=0.0)

        assert len(calls) == 3


    def test_failing_recipient_does_not_stall_the_loop(self, session_factory, add_subscriber, email_sender):
        add_subscriber("a@example.com")
        add_subscriber("b@example.com")
        _publish(session_factory)
        email_sender.transient_failures.add("a@example.com")
        stop = threading.Event()
        thread = threading.Thread(
            target=run_worker_until_stopped,
            args=(session_factory, email_sender, stop),
            kwargs={"poll_interval": 0.01, "failure_backoff": 0.0},
        )

        thread.start()
        try:
            assert _wait_for(lambda: email_sender.recipients() == ["b@example.com"])
            assert _wait_for(lambda: email_sender.attempts.count("a@example.com") >= 2)
        finally:
            stop.set()
            thread.join(timeout=5)

        assert _queued(session_factory) == ["a@example.com"]


class TestDeliveryWorker:
    def test_start_delivers_and_stop_joins(self, session_factory, add_subscriber, email_sender):
        add_subscriber("a@example.com")
        add_subscriber("b@example.com")
        _publish(session_factory)
        worker = DeliveryWorker(session_factory, email_sender, poll_interval=0.01, failure_backoff=0.01)

        worker.start()
        try:
            assert worker.is_running
            assert _wait_for(lambda: len(email_sender.sent) == 2)
        finally:
            worker.stop(timeout=5)

        assert not worker.is_running
        assert _queued(session_factory) == []

    def test_delivers_past_a_recipient_that_keeps_failing(self, session_factory, add_subscriber, email_sender):
        add_subscriber("a@example.com")
        add_subscriber("b@example.com")
        _publish(session_factory)
        email_sender.transient_failures.add("a@example.com")
        worker = DeliveryWorker(session_factory, email_sender, poll_interval=0.01, failure_backoff=0.01)

        worker.start()
        try:
            assert _wait_for(lambda: email_sender.recipients() == ["b@example.com"])
        finally:
            worker.stop(timeout=5)

        assert _queued(session_factory) == ["a@example.com"]

    def test_start_twice_raises(self, session_factory, email_sender):
        worker = DeliveryWorker(session_factory, email_sender, poll_interval=0.01)
        worker.start()
        try:
            with pytest.raises(RuntimeError, match="already running"):
                worker.start()
        finally:
            worker.stop(timeout=5)

    def test_picks_up_work_published_after_start(self, session_factory, add_subscriber, email_sender):
        add_subscriber("a@example.com")
        worker = DeliveryWorker(session_factory, email_sender, poll_interval=0.01)
        worker.start()
        try:
            _publish(session_factory)
            assert _wait_for(lambda: email_sender.recipients() == ["a@example.com"])
        finally:
            worker.stop(timeout=5)

