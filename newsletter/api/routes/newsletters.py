"""POST /admin/newsletters: publish an issue, idempotently.

The form carries an ``idempotency_key``.  The first submission for a
``(user, key)`` pair records the issue, queues one delivery per confirmed
subscriber and stores the reply; every later submission gets that same
reply back, byte for byte, and changes nothing.
"""
from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Form, HTTPException
from fastapi.responses import RedirectResponse, Response
from sqlalchemy.orm import Session

from newsletter.api.deps import get_current_user_id, get_db, get_idempotency_gateway
from newsletter.core.errors import ConflictInProgress, InvalidIdempotencyKey, StorageError
from newsletter.delivery.enqueue import publish_issue
from newsletter.idempotency.key import IdempotencyKey
from newsletter.idempotency.persistence import IdempotencyGateway, Replay
from newsletter.idempotency.responses import capture_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/newsletters", tags=["newsletters"])

PUBLISHED_REDIRECT = "/admin/newsletters"


@router.post("", summary="Publish a newsletter issue to all confirmed subscribers")
def publish_newsletter(
    title: str = Form(...),
    text_content: str = Form(...),
    html_content: str = Form(...),
    idempotency_key: str = Form(...),
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    gateway: IdempotencyGateway = Depends(get_idempotency_gateway),
) -> Response:
    try:
        key = IdempotencyKey.parse(idempotency_key)
    except InvalidIdempotencyKey as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        action = gateway.claim_or_replay(db, user_id, key)
        if isinstance(action, Replay):
            return action.response.to_response()

        publish_issue(db, title=title, html_content=html_content, text_content=text_content)
        response = RedirectResponse(PUBLISHED_REDIRECT, status_code=303)
        saved = gateway.finish(db, user_id, key, capture_response(response))
    except ConflictInProgress as exc:
        raise HTTPException(
            status_code=409,
            detail=str(exc),
            headers={"Retry-After": str(exc.retry_after)},
        )
    except StorageError:
        logger.exception("Publishing a newsletter issue failed for user %s", user_id)
        raise HTTPException(status_code=500, detail="Internal server error")

    return saved.to_response()
