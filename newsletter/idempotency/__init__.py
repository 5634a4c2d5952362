"""Idempotent command gateway.

Claim a ``(user_id, idempotency_key)`` pair inside a transaction, run the
command in that same transaction, attach the reply, commit.  Duplicate
submissions replay the stored reply instead of running the command again.
"""
from newsletter.idempotency.key import MAX_IDEMPOTENCY_KEY_LENGTH, IdempotencyKey
from newsletter.idempotency.persistence import Claimed, IdempotencyGateway, Replay, get_saved_response
from newsletter.idempotency.responses import StoredResponse, capture_response

__all__ = [
    "MAX_IDEMPOTENCY_KEY_LENGTH",
    "Claimed",
    "IdempotencyGateway",
    "IdempotencyKey",
    "Replay",
    "StoredResponse",
    "capture_response",
    "get_saved_response",
]
