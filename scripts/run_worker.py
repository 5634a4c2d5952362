#!/usr/bin/env python3
"""Run issue delivery workers as a standalone process.

Usage:
    python scripts/run_worker.py              # one worker, polls forever
    python scripts/run_worker.py --workers 4  # four workers in this process
    python scripts/run_worker.py --once       # drain the queue, then exit

Reads DATABASE_URL and EMAIL_* settings from env / .env.  SIGINT and SIGTERM
stop the workers after their in-flight delivery settles.
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

# Ensure project root is on sys.path
sys.path.insert(0, ".")

from newsletter.core.logging import setup_logging
from newsletter.core.settings import get_settings
from newsletter.db.session import get_session_factory
from newsletter.delivery.worker import DeliveryWorker, drain_queue
from newsletter.email_client import build_email_sender

logger = logging.getLogger("newsletter.worker")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Deliver queued newsletter issues.")
    parser.add_argument("--workers", type=int, default=None, help="number of worker threads")
    parser.add_argument("--once", action="store_true", help="drain the queue and exit")
    args = parser.parse_args(argv)

    setup_logging()
    settings = get_settings()
    email_client = build_email_sender(settings)
    session_factory = get_session_factory()

    if args.once:
        try:
            completed = drain_queue(session_factory, email_client)
        finally:
            email_client.close()
        logger.info("Queue drained; %d deliveries settled", completed)
        return 0

    count = args.workers or settings.delivery_worker_count
    workers = [
        DeliveryWorker(
            session_factory,
            email_client,
            poll_interval=settings.delivery_poll_interval_seconds,
            failure_backoff=settings.delivery_failure_backoff_seconds,
            name=f"delivery-worker-{index}",
        )
        for index in range(count)
    ]

    shutdown = threading.Event()

    def _request_shutdown(signum, _frame) -> None:
        logger.info("Received signal %d; stopping workers", signum)
        shutdown.set()

    signal.signal(signal.SIGINT, _request_shutdown)
    signal.signal(signal.SIGTERM, _request_shutdown)

    for worker in workers:
        worker.start()
    shutdown.wait()
    for worker in workers:
        worker.stop()
    email_client.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
