from __future__ import annotations

import re
from dataclasses import dataclass

from newsletter.core.errors import InvalidIdempotencyKey

MAX_IDEMPOTENCY_KEY_LENGTH = 50

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(frozen=True)
class IdempotencyKey:
    """Caller-supplied token identifying one logical submission."""

    value: str

    @classmethod
    def parse(cls, raw: str | None) -> IdempotencyKey:
        """Validate *raw*; raises ``InvalidIdempotencyKey`` without touching storage."""
        if raw is None or raw == "":
            raise InvalidIdempotencyKey("The idempotency key cannot be empty")
        if len(raw) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise InvalidIdempotencyKey(
                f"The idempotency key must be shorter than {MAX_IDEMPOTENCY_KEY_LENGTH + 1} characters"
            )
        if not _SAFE_KEY.match(raw):
            raise InvalidIdempotencyKey(
                "The idempotency key may only contain letters, digits, '-' and '_'"
            )
        return cls(raw)

    def __str__(self) -> str:
        return self.value
