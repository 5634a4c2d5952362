from __future__ import annotations

import os
import threading
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from newsletter.core.errors import PermanentDeliveryError, TransientDeliveryError
from newsletter.db.base import Base
from newsletter.db.models import SUBSCRIPTION_STATUS_CONFIRMED, SUBSCRIPTION_STATUS_PENDING, Subscription
from newsletter.domain.subscriber_email import SubscriberEmail


class RecordingEmailSender:
    """In-memory ``EmailSender``: records sends, fails on demand per address."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str, str]] = []
        self.transient_failures: set[str] = set()
        self.permanent_failures: set[str] = set()
        self.fail_once: set[str] = set()
        self.attempts: list[str] = []
        self._lock = threading.Lock()

    def send_email(
        self,
        recipient: SubscriberEmail,
        subject: str,
        html_content: str,
        text_content: str,
    ) -> None:
        with self._lock:
            self.attempts.append(recipient.value)
        if recipient.value in self.permanent_failures:
            raise PermanentDeliveryError(f"refused {recipient.value}")
        if recipient.value in self.fail_once:
            self.fail_once.discard(recipient.value)
            raise TransientDeliveryError(f"provider hiccup for {recipient.value}")
        if recipient.value in self.transient_failures:
            raise TransientDeliveryError(f"provider unavailable for {recipient.value}")
        with self._lock:
            self.sent.append((recipient.value, subject, html_content, text_content))

    def recipients(self) -> list[str]:
        with self._lock:
            return [sent[0] for sent in self.sent]

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine(tmp_path):
    """File-backed SQLite so several sessions and threads see the same data."""
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'newsletter.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture()
def add_subscriber(session_factory):
    """Insert and commit a subscription row; returns the stored email."""

    def _add(email: str, confirmed: bool = True, name: str = "Subscriber") -> str:
        with session_factory() as session:
            session.add(
                Subscription(
                    id=uuid4(),
                    email=email,
                    name=name,
                    status=SUBSCRIPTION_STATUS_CONFIRMED if confirmed else SUBSCRIPTION_STATUS_PENDING,
                )
            )
            session.commit()
        return email

    return _add


@pytest.fixture()
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest.fixture
def client(session_factory, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    """TestClient with ``get_db`` bound to the test database."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")

    from newsletter.core.settings import get_settings

    get_settings.cache_clear()

    from newsletter.api.deps import get_db
    from newsletter.main import app

    def _override_db():
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[get_db] = _override_db
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()

    get_settings.cache_clear()
    os.environ.pop("DATABASE_URL", None)
