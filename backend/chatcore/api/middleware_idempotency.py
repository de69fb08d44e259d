"""Expose a client-supplied `Idempotency-Key` to write handlers.

The key is validated here so handlers only ever see a well-formed value on
`request.state.idem_key`; it is echoed back on the response. Malformed keys are
rejected before the request reaches a route.
"""

from __future__ import annotations

import re

from starlette.datastructures import Headers, MutableHeaders
from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from chatcore.api.errors import error_response

_HEADER = "Idempotency-Key"
_VALID_KEY = re.compile(r"^[\x21-\x7e]{1,128}$")
_WRITE_METHODS = frozenset({"POST", "PUT", "PATCH"})


class IdempotencyMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["method"] not in _WRITE_METHODS:
            await self.app(scope, receive, send)
            return

        key = (Headers(scope=scope).get(_HEADER) or "").strip()
        if not key:
            await self.app(scope, receive, send)
            return
        if not _VALID_KEY.match(key):
            response = error_response(Request(scope), 400, "invalid_argument", "invalid_idempotency_key")
            await response(scope, receive, send)
            return
        scope.setdefault("state", {})["idem_key"] = key

        async def send_with_key(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message).append(_HEADER, key)
            await send(message)

        await self.app(scope, receive, send_with_key)
