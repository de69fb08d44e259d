"""Global error handlers rendering `{kind, message, request_id}` bodies."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatcore.api.request_id import get_request_id
from chatcore.domain.chat.errors import ChatError, public_error

LOGGER = logging.getLogger(__name__)

_HTTP_KINDS = {
    400: "invalid_argument",
    401: "unauthenticated",
    403: "forbidden",
    404: "not_found",
    405: "invalid_argument",
    409: "conflict",
    503: "unavailable",
}


def error_response(request: Request, status_code: int, kind: str, message: str, **extra) -> JSONResponse:
    payload = {"kind": kind, "message": message, "request_id": get_request_id(request)}
    payload.update(extra)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(status_code=status_code, content=payload, headers=headers)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):  # type: ignore[override]
        visible = public_error(exc)
        if visible.status_code >= 500:
            LOGGER.warning("chat_request_failed", extra={"kind": visible.kind, "detail": visible.detail})
        return error_response(request, visible.status_code, visible.kind, visible.detail)

    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        kind = _HTTP_KINDS.get(exc.status_code, "internal" if exc.status_code >= 500 else "invalid_argument")
        return error_response(request, exc.status_code, kind, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        return error_response(
            request,
            422,
            "invalid_argument",
            "validation_error",
            errors=jsonable_encoder(exc.errors()),
        )
