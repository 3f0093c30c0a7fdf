# ingest/middleware/request_id.py
from __future__ import annotations

"""
Request ID middleware (pure ASGI).

- Reuses the gateway's `X-Request-ID` when it is a safe token, otherwise
  generates a UUIDv4.
- Stores it in `request.state.request_id`, echoes it on the response and
  binds it into the Loguru context for every log line of the request.

Env: `REQUEST_ID_HEADER_NAME` (default `X-Request-ID`),
`REQUEST_ID_MAX_LENGTH` (default 128).
"""

import os
import re
import uuid

from loguru import logger
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

HEADER_NAME = os.getenv("REQUEST_ID_HEADER_NAME", "X-Request-ID")
MAX_ID_LENGTH = int(os.getenv("REQUEST_ID_MAX_LENGTH", "128"))

# no spaces or control chars: ids end up in log lines
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9._:-]+$")


def _choose_request_id(incoming: str | None) -> str:
    candidate = (incoming or "").strip()
    if 0 < len(candidate) <= MAX_ID_LENGTH and _SAFE_ID_RE.fullmatch(candidate):
        return candidate
    return str(uuid.uuid4())


class RequestIDMiddleware:
    def __init__(self, app: ASGIApp, header_name: str = HEADER_NAME) -> None:
        self.app = app
        self.header_name = header_name
        self._header_bytes = header_name.lower().encode("latin-1")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            return await self.app(scope, receive, send)

        req_id = _choose_request_id(Headers(scope=scope).get(self.header_name))
        scope.setdefault("state", {})["request_id"] = req_id

        async def send_with_id(message: Message) -> None:
            if message.get("type") == "http.response.start":
                headers = [(k, v) for (k, v) in message.get("headers", []) if k.lower() != self._header_bytes]
                headers.append((self._header_bytes, req_id.encode("latin-1")))
                message["headers"] = headers
            await send(message)

        with logger.contextualize(request_id=req_id):
            await self.app(scope, receive, send_with_id)


def get_request_id(request) -> str:
    """Current request id from `request.state` ("" when absent)."""
    return getattr(getattr(request, "state", object()), "request_id", "") or ""


__all__ = ["RequestIDMiddleware", "get_request_id"]
