"""Socket.IO namespace for live chat."""

from __future__ import annotations

import logging
from typing import Any, Optional

import socketio

from chatcore.domain.chat.broadcaster import LiveBroadcaster
from chatcore.domain.chat.container import get_chat
from chatcore.domain.chat.errors import InvalidArgument, Unauthenticated
from chatcore.infra.auth import authenticate_token, token_from_handshake
from chatcore.obs import metrics as obs_metrics
from chatcore.settings import settings

LOGGER = logging.getLogger(__name__)


def _field(payload: Any, *names: str) -> Any:
	if isinstance(payload, dict):
		for name in names:
			if name in payload:
				return payload[name]
	return None


def _conversation_id(payload: Any) -> str:
	value = payload if isinstance(payload, str) else _field(payload, "conversationId", "conversation_id")
	if not isinstance(value, str) or not value.strip():
		raise InvalidArgument("conversation_id_required")
	return value.strip()


class ChatNamespace(socketio.AsyncNamespace):
	"""Authenticated connections that join conversation rooms.

	Client events use dashed names (`join-room`, `send-message`, ...). Operation
	failures never raise out of a handler; they are reported to the calling
	connection as `operation-error`.
	"""

	def __init__(self, broadcaster: LiveBroadcaster | None = None, namespace: Optional[str] = None) -> None:
		super().__init__(namespace or settings.socket_namespace)
		self._broadcaster = broadcaster

	@property
	def broadcaster(self) -> LiveBroadcaster:
		"""The explicit broadcaster, or the process-wide one."""
		broadcaster = self._broadcaster or get_chat().broadcaster
		broadcaster.bind(self._emit_to)
		return broadcaster

	async def _emit_to(self, event: str, data: Any, *, to: str) -> None:
		await self.emit(event, data, to=to)

	async def trigger_event(self, event: str, *args):
		handler_name = event.replace("-", "_")
		# Unknown client events are ignored and not counted.
		if event not in ("connect", "disconnect") and hasattr(self, f"on_{handler_name}"):
			obs_metrics.socket_event(self.namespace, event)
		return await super().trigger_event(handler_name, *args)

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		try:
			user = authenticate_token(token_from_handshake(environ, auth))
		except Unauthenticated:
			raise ConnectionRefusedError("unauthenticated") from None
		self.broadcaster.register(sid, user)
		obs_metrics.socket_connected(self.namespace)
		LOGGER.info("socket_connected", extra={"sid": sid, "user_id": user.id})
		await self.emit("connected", {"userId": user.id}, to=sid)

	async def on_disconnect(self, sid: str, reason: Any = None) -> None:
		if not self.broadcaster.is_connected(sid):
			return
		rooms = self.broadcaster.unregister(sid)
		obs_metrics.socket_disconnected(self.namespace)
		LOGGER.info("socket_disconnected", extra={"sid": sid, "rooms": len(rooms), "reason": str(reason) if reason else None})

	async def on_join_room(self, sid: str, payload: Any = None) -> Optional[dict]:
		conversation_id = None
		try:
			conversation_id = _conversation_id(payload)
			conversation = await self.broadcaster.join(sid, conversation_id)
		except Exception as exc:
			await self.broadcaster.emit_error(sid, exc, event="join-room", conversation_id=conversation_id)
			return None
		ack = {"conversationId": conversation.id}
		await self.emit("joined-room", ack, to=sid)
		return ack

	async def on_leave_room(self, sid: str, payload: Any = None) -> Optional[dict]:
		conversation_id = None
		try:
			conversation_id = _conversation_id(payload)
			self.broadcaster.leave(sid, conversation_id)
		except Exception as exc:
			await self.broadcaster.emit_error(sid, exc, event="leave-room", conversation_id=conversation_id)
			return None
		ack = {"conversationId": conversation_id}
		await self.emit("left-room", ack, to=sid)
		return ack

	async def on_send_message(self, sid: str, payload: Any = None, *extra: Any) -> Optional[dict]:
		conversation_id = None
		try:
			if isinstance(payload, dict):
				conversation_id = _conversation_id(payload)
				content = _field(payload, "content")
				attachments = _field(payload, "attachments")
				client_msg_id = _field(payload, "clientMsgId", "client_msg_id")
			else:
				# Positional form: (conversationId, content, attachments?)
				conversation_id = _conversation_id(payload)
				content = extra[0] if extra else None
				attachments = extra[1] if len(extra) > 1 else None
				client_msg_id = None
			if attachments is not None and not isinstance(attachments, list):
				raise InvalidArgument("invalid_attachments")
			message = await self.broadcaster.send(
				sid,
				conversation_id,
				content,
				attachments,
				client_msg_id=str(client_msg_id) if client_msg_id else None,
			)
		except Exception as exc:
			await self.broadcaster.emit_error(sid, exc, event="send-message", conversation_id=conversation_id)
			return None
		return {"ok": True, "message": message.to_dict()}

	async def on_mark_read(self, sid: str, payload: Any = None, *extra: Any) -> Optional[dict]:
		conversation_id = None
		try:
			conversation_id = _conversation_id(payload)
			if isinstance(payload, dict):
				up_to = _field(payload, "upToSequence", "up_to_sequence")
			else:
				up_to = extra[0] if extra else None
			receipt = await self.broadcaster.mark_read(sid, conversation_id, up_to)
		except Exception as exc:
			await self.broadcaster.emit_error(sid, exc, event="mark-read", conversation_id=conversation_id)
			return None
		return {"ok": True, "marked": receipt.marked, "upToSequence": receipt.up_to_sequence}

	async def on_typing(self, sid: str, payload: Any = None, *extra: Any) -> None:
		conversation_id = None
		try:
			conversation_id = _conversation_id(payload)
			if isinstance(payload, dict):
				on_flag = _field(payload, "on")
			else:
				on_flag = extra[0] if extra else None
			self.broadcaster.typing(sid, conversation_id, True if on_flag is None else bool(on_flag))
		except Exception as exc:
			await self.broadcaster.emit_error(sid, exc, event="typing", conversation_id=conversation_id)
