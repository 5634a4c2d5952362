"""Claim-or-replay over the ``idempotency`` table.

``claim_or_replay`` inserts ``(user_id, key, now)`` with ``ON CONFLICT DO
NOTHING`` in the caller's transaction.  If the row was inserted the caller
owns the key: it runs its command in the *same* session and then calls
``finish``, which attaches the reply and commits.  Claim, effects and reply
therefore become visible together or not at all.

If the insert hit an existing row, the stored reply is replayed.  A row with
no reply was committed by something that never finished; it is reclaimed once
it is older than ``reclaim_after``, otherwise ``ConflictInProgress`` tells the
caller to retry later.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from newsletter.core.errors import ConflictInProgress, StorageError
from newsletter.db.models import IdempotencyRecord
from newsletter.db.repositories import IdempotencyRecordRepository
from newsletter.idempotency.key import IdempotencyKey
from newsletter.idempotency.responses import StoredResponse

logger = logging.getLogger(__name__)


@dataclass
class Claimed:
    """The caller owns the key; ``session`` holds the open claiming transaction."""

    session: Session


@dataclass
class Replay:
    """The key was processed before; ``response`` is the reply it produced."""

    response: StoredResponse


NextAction = Union[Claimed, Replay]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_saved_response(db: Session, user_id: UUID, key: IdempotencyKey) -> StoredResponse | None:
    """Return the reply stored for ``(user_id, key)``, or ``None`` if there is none yet."""
    stmt = (
        select(IdempotencyRecord)
        .where(
            IdempotencyRecord.user_id == user_id,
            IdempotencyRecord.idempotency_key == key.value,
        )
        .execution_options(populate_existing=True)
    )
    record = db.execute(stmt).scalar_one_or_none()
    if record is None or record.response_status_code is None:
        return None
    return StoredResponse.from_columns(
        record.response_status_code,
        record.response_headers,
        record.response_body,
    )


class IdempotencyGateway:
    """At-most-once execution per ``(user_id, idempotency_key)``."""

    def __init__(
        self,
        reclaim_after: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.reclaim_after = reclaim_after
        self._clock = clock

    # -- claim --------------------------------------------------------------

    def claim_or_replay(self, db: Session, user_id: UUID, key: IdempotencyKey) -> NextAction:
        """Claim the key in *db*'s transaction, or return the reply stored for it."""
        now = self._clock()
        records = IdempotencyRecordRepository(db)
        try:
            if records.insert_if_absent(user_id, key.value, now):
                logger.info("Claimed idempotency key for user %s", user_id)
                return Claimed(db)

            saved = get_saved_response(db, user_id, key)
            if saved is not None:
                logger.info("Replaying saved response for user %s", user_id)
                return Replay(saved)

            # No reply yet: lock the row so concurrent reclaimers queue up behind us
            record = records.get_for_update(user_id, key.value)
            if record is None:
                raise StorageError("Idempotency record vanished while it was being inspected")
            if record.response_status_code is not None:
                return Replay(
                    StoredResponse.from_columns(
                        record.response_status_code,
                        record.response_headers,
                        record.response_body,
                    )
                )

            age = now - _as_utc(record.created_at)
            if age < self.reclaim_after:
                retry_after = max(1, math.ceil((self.reclaim_after - age).total_seconds()))
                db.rollback()
                logger.warning(
                    "Idempotency key for user %s is still being processed (claimed %.1fs ago)",
                    user_id,
                    age.total_seconds(),
                )
                raise ConflictInProgress(
                    "A request with this idempotency key is already being processed",
                    retry_after=retry_after,
                )

            records.touch(user_id, key.value, now)
            logger.warning(
                "Reclaiming abandoned idempotency key for user %s (claimed %.1fs ago)",
                user_id,
                age.total_seconds(),
            )
            return Claimed(db)
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError("Failed to claim idempotency key") from exc

    # -- finish -------------------------------------------------------------

    def finish(
        self,
        db: Session,
        user_id: UUID,
        key: IdempotencyKey,
        response: StoredResponse,
    ) -> StoredResponse:
        """Attach *response* to the claimed row and commit the owning transaction."""
        records = IdempotencyRecordRepository(db)
        try:
            updated = records.attach_response(
                user_id,
                key.value,
                status_code=response.status_code,
                headers=response.headers_to_json(),
                body=response.body,
            )
            if updated == 0:
                raise StorageError("No claimed idempotency record to attach the response to")
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise StorageError("Failed to save idempotent response") from exc
        except StorageError:
            db.rollback()
            raise
        logger.info("Saved response %d for user %s", response.status_code, user_id)
        return response
