"""FastAPI application factory.

Assembles the routers and, when ``DELIVERY_WORKER_ENABLED`` is set, runs
in-process delivery workers for the lifetime of the app.  Standalone
workers are started with ``scripts/run_worker.py`` instead.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from newsletter.api.routes.health import router as health_router
from newsletter.api.routes.newsletters import router as newsletters_router
from newsletter.core.logging import setup_logging
from newsletter.core.settings import get_settings
from newsletter.db.session import get_session_factory
from newsletter.delivery.worker import DeliveryWorker
from newsletter.email_client import EmailSender, build_email_sender

logger = logging.getLogger(__name__)

WORKER_STOP_TIMEOUT = 30.0


def _start_workers() -> tuple[list[DeliveryWorker], EmailSender | None]:
    settings = get_settings()
    if not settings.delivery_worker_enabled:
        return [], None
    email_client = build_email_sender(settings)
    workers = [
        DeliveryWorker(
            get_session_factory(),
            email_client,
            poll_interval=settings.delivery_poll_interval_seconds,
            failure_backoff=settings.delivery_failure_backoff_seconds,
            name=f"delivery-worker-{index}",
        )
        for index in range(settings.delivery_worker_count)
    ]
    for worker in workers:
        worker.start()
    return workers, email_client


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    workers, email_client = _start_workers()
    yield
    for worker in workers:
        worker.stop(timeout=WORKER_STOP_TIMEOUT)
    if email_client is not None:
        email_client.close()


settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(newsletters_router)
