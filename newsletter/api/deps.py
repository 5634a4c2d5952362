"""FastAPI dependency injection: database sessions, the gateway, the acting user."""
from __future__ import annotations

from collections.abc import Generator
from datetime import timedelta
from uuid import UUID

from fastapi import Header, HTTPException
from sqlalchemy.orm import Session

from newsletter.core.settings import get_settings
from newsletter.db.session import get_session_factory
from newsletter.idempotency.persistence import IdempotencyGateway


def get_db() -> Generator[Session, None, None]:
    """Yield a SQLAlchemy session; commit on success, rollback on error."""
    db = get_session_factory()()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_idempotency_gateway() -> IdempotencyGateway:
    """Return a gateway configured with the abandoned-claim threshold."""
    settings = get_settings()
    return IdempotencyGateway(reclaim_after=timedelta(seconds=settings.idempotency_reclaim_after_seconds))


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> UUID:
    """Return the authenticated operator's id.

    Authentication happens upstream; it forwards the user id in ``X-User-Id``.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Authentication required") from None
