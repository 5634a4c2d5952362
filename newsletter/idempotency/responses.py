"""Byte-exact capture and replay of HTTP responses.

A ``StoredResponse`` keeps the status code, the ordered raw header pairs and
the body bytes, so a replayed reply is indistinguishable from the original.
Header values are bytes; they are base64-encoded for the JSON column.
"""
from __future__ import annotations

import base64
from dataclasses import dataclass, field

from starlette.responses import Response


@dataclass(frozen=True)
class StoredResponse:
    status_code: int
    headers: list[tuple[str, bytes]] = field(default_factory=list)
    body: bytes = b""

    # -- persistence --------------------------------------------------------

    def headers_to_json(self) -> list[dict[str, str]]:
        return [
            {"name": name, "value": base64.b64encode(value).decode("ascii")}
            for name, value in self.headers
        ]

    @classmethod
    def from_columns(
        cls,
        status_code: int,
        headers: list[dict[str, str]] | None,
        body: bytes | None,
    ) -> StoredResponse:
        return cls(
            status_code=status_code,
            headers=[(pair["name"], base64.b64decode(pair["value"])) for pair in headers or []],
            body=bytes(body or b""),
        )

    # -- HTTP ---------------------------------------------------------------

    def to_response(self) -> Response:
        """Rebuild a Starlette ``Response`` carrying exactly the stored headers."""
        response = Response(content=self.body, status_code=self.status_code)
        response.raw_headers = [(name.encode("latin-1"), value) for name, value in self.headers]
        return response


def capture_response(response: Response) -> StoredResponse:
    """Snapshot a fully-rendered (non-streaming) Starlette response."""
    return StoredResponse(
        status_code=response.status_code,
        headers=[(name.decode("latin-1"), bytes(value)) for name, value in response.raw_headers],
        body=bytes(response.body),
    )
