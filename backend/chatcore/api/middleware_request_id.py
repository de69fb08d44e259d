"""Bind a request id to every HTTP exchange.

The id comes from the caller's `X-Request-Id` when it is usable, otherwise a
fresh UUID. It is stored on `request.state`, bound into the logging context
for the lifetime of the request, and echoed on the response.
"""

from __future__ import annotations

import re
import uuid

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from chatcore.api.request_id import REQUEST_ID_ATTR
from chatcore.obs import logging as obs_logging

_HEADER = "X-Request-Id"
_VALID_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _incoming_id(scope: Scope) -> str:
    candidate = (Headers(scope=scope).get(_HEADER) or "").strip()
    if _VALID_ID.match(candidate):
        return candidate
    return str(uuid.uuid4())


class RequestIdMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        rid = _incoming_id(scope)
        scope.setdefault("state", {})[REQUEST_ID_ATTR] = rid

        async def send_with_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                if _HEADER not in headers:
                    headers.append(_HEADER, rid)
            await send(message)

        tokens = obs_logging.bind_context(request_id=rid)
        try:
            await self.app(scope, receive, send_with_id)
        finally:
            obs_logging.reset_context(tokens)
