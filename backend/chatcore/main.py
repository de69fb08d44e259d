"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatcore.api import chat, ops
from chatcore.api.errors import install_error_handlers
from chatcore.api.middleware_idempotency import IdempotencyMiddleware
from chatcore.api.middleware_request_id import RequestIdMiddleware
from chatcore.domain.chat.container import reset_chat
from chatcore.domain.chat.sockets import ChatNamespace
from chatcore.infra import postgres
from chatcore.infra.redis import close_redis
from chatcore.obs import init as obs_init
from chatcore.settings import settings

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	try:
		await postgres.init_pool()
	except Exception:
		if settings.is_prod():
			raise
		LOGGER.warning("postgres_unavailable_using_memory_store", exc_info=True)
	try:
		yield
	finally:
		await reset_chat()
		await postgres.close_pool()
		await close_redis()


app = FastAPI(title="Chat Core", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(getattr(settings, "cors_allow_origins", []))
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else []

# Starlette disallows wildcard '*' with allow_credentials=True. Replace '*' with explicit origins.
if "*" in allow_origins:
	if settings.is_dev():
		allow_origins = [
			"http://localhost:3000",
			"http://127.0.0.1:3000",
			"http://localhost:5173",
			"http://127.0.0.1:5173",
		]
	else:
		allow_origins = [origin for origin in allow_origins if origin != "*"]

# Use the same allowed origins for Socket.IO as for the REST API
sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
chat_namespace = ChatNamespace()
sio.register_namespace(chat_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
obs_init(app)

app.add_middleware(IdempotencyMiddleware)
# Every response, including early rejections, carries X-Request-Id
app.add_middleware(RequestIdMiddleware)
# Outermost, so early rejections from the inner middlewares still carry CORS headers
app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
	expose_headers=["X-Request-Id", "Idempotency-Key"],
)

app.include_router(chat.router, tags=["chat"])
app.include_router(ops.router, tags=["ops"])
