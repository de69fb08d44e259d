"""Live broadcaster: connection registry, room subscriptions and ordered fan-out."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, Mapping, Optional, Set, Tuple

from chatcore.domain.chat import service as chat_service
from chatcore.domain.chat.errors import ChatError, InvalidArgument, Unauthenticated, public_error
from chatcore.domain.chat.models import Conversation, Message, ReadReceipt
from chatcore.domain.chat.store import ConversationStore
from chatcore.infra.auth import AuthenticatedUser
from chatcore.obs import metrics as obs_metrics

LOGGER = logging.getLogger(__name__)

Emitter = Callable[..., Awaitable[Any]]

EVENT_MESSAGE = "message-received"
EVENT_READ = "messages-read"
EVENT_TYPING = "typing"
EVENT_ERROR = "operation-error"


@dataclass(slots=True)
class Connection:
	sid: str
	user: AuthenticatedUser
	rooms: Set[str] = field(default_factory=set)


@dataclass(slots=True, frozen=True)
class _Dispatch:
	event: str
	payload: Dict[str, Any]
	skip_sid: Optional[str] = None


class LiveBroadcaster:
	"""Maps connections to users and rooms, and fans out committed events.

	Each room has a FIFO dispatch queue drained by at most one task, so every
	subscriber sees a room's events in the order they were enqueued. Enqueueing
	happens from the store's commit hook, inside the conversation's ordering
	scope, which makes that order the sequence order.
	"""

	def __init__(self, store: ConversationStore, *, emit: Emitter | None = None) -> None:
		self._store = store
		self._emit = emit
		self._connections: Dict[str, Connection] = {}
		self._rooms: Dict[str, Set[str]] = {}
		self._queues: Dict[str, Deque[_Dispatch]] = {}
		self._drainers: Dict[str, asyncio.Task] = {}

	def bind(self, emit: Emitter) -> None:
		self._emit = emit

	# Connection lifecycle

	def register(self, sid: str, user: AuthenticatedUser) -> Connection:
		connection = Connection(sid=sid, user=user)
		self._connections[sid] = connection
		return connection

	def unregister(self, sid: str) -> Tuple[str, ...]:
		"""Drop the connection and every room subscription it holds."""
		connection = self._connections.pop(sid, None)
		if connection is None:
			return ()
		rooms = tuple(connection.rooms)
		for conversation_id in rooms:
			self._unsubscribe(sid, conversation_id)
		connection.rooms.clear()
		return rooms

	def user_for(self, sid: str) -> AuthenticatedUser:
		connection = self._connections.get(sid)
		if connection is None:
			raise Unauthenticated("connection_not_authenticated")
		return connection.user

	def is_connected(self, sid: str) -> bool:
		return sid in self._connections

	def rooms_for(self, sid: str) -> frozenset[str]:
		connection = self._connections.get(sid)
		return frozenset(connection.rooms) if connection else frozenset()

	def subscribers(self, conversation_id: str) -> frozenset[str]:
		return frozenset(self._rooms.get(conversation_id, ()))

	def stats(self) -> Dict[str, int]:
		return {
			"connections": len(self._connections),
			"rooms": len(self._rooms),
			"subscriptions": sum(len(members) for members in self._rooms.values()),
			"pendingDispatches": sum(len(queue) for queue in self._queues.values()),
		}

	def _unsubscribe(self, sid: str, conversation_id: str) -> None:
		members = self._rooms.get(conversation_id)
		if members is None:
			return
		members.discard(sid)
		if not members:
			self._rooms.pop(conversation_id, None)

	# Room operations

	async def join(self, sid: str, conversation_id: str) -> Conversation:
		user = self.user_for(sid)
		conversation = await self._store.load_for_member(conversation_id, user.id)
		connection = self._connections.get(sid)
		if connection is None:
			# Disconnected while membership was being checked.
			raise Unauthenticated("connection_not_authenticated")
		connection.rooms.add(conversation.id)
		self._rooms.setdefault(conversation.id, set()).add(sid)
		return conversation

	def leave(self, sid: str, conversation_id: str) -> bool:
		"""Unsubscribe; returns False when the connection was not joined."""
		self.user_for(sid)
		connection = self._connections[sid]
		if conversation_id not in connection.rooms:
			return False
		connection.rooms.discard(conversation_id)
		self._unsubscribe(sid, conversation_id)
		return True

	async def send(
		self,
		sid: str,
		conversation_id: str,
		content: object,
		attachments: Iterable[Mapping[str, object]] | None = None,
		*,
		client_msg_id: Optional[str] = None,
	) -> Message:
		"""Append as the connection's user and fan the message out to the room.

		The sender's own connections receive the message like everyone else.
		"""
		user = self.user_for(sid)
		message, replayed = await chat_service.append_message(
			self._store,
			user.id,
			conversation_id,
			content,
			attachments,
			idempotency_key=client_msg_id,
			on_commit=self.publish,
		)
		if not replayed:
			obs_metrics.inc_chat_send("socket")
		return message

	async def mark_read(self, sid: str, conversation_id: str, up_to_sequence: int) -> ReadReceipt:
		user = self.user_for(sid)
		receipt = await self._store.mark_read(
			conversation_id, user.id, up_to_sequence, on_commit=self.publish_receipt
		)
		if receipt.marked:
			obs_metrics.inc_chat_read()
		return receipt

	def typing(self, sid: str, conversation_id: str, on: bool) -> None:
		user = self.user_for(sid)
		if conversation_id not in self._connections[sid].rooms:
			raise InvalidArgument("room_not_joined")
		self._enqueue(
			conversation_id,
			_Dispatch(
				EVENT_TYPING,
				{"conversationId": conversation_id, "userId": user.id, "on": bool(on)},
				skip_sid=sid,
			),
		)

	# Fan-out

	def publish(self, message: Message) -> None:
		"""Queue a committed message for every subscriber of its room. Never blocks."""
		self._enqueue(
			message.conversation_id,
			_Dispatch(EVENT_MESSAGE, {"conversationId": message.conversation_id, "message": message.to_dict()}),
		)

	def publish_receipt(self, receipt: ReadReceipt) -> None:
		self._enqueue(receipt.conversation_id, _Dispatch(EVENT_READ, receipt.to_event()))

	def _enqueue(self, conversation_id: str, dispatch: _Dispatch) -> None:
		queue = self._queues.setdefault(conversation_id, deque())
		queue.append(dispatch)
		task = self._drainers.get(conversation_id)
		if task is None or task.done():
			self._drainers[conversation_id] = asyncio.get_running_loop().create_task(
				self._drain(conversation_id)
			)

	async def _drain(self, conversation_id: str) -> None:
		queue = self._queues[conversation_id]
		try:
			while queue:
				dispatch = queue.popleft()
				# Copy so joins and leaves during the emits do not disturb this delivery.
				recipients = tuple(self._rooms.get(conversation_id, ()))
				for sid in recipients:
					if sid == dispatch.skip_sid:
						continue
					await self._deliver(sid, dispatch)
		finally:
			if not queue:
				self._queues.pop(conversation_id, None)
				self._drainers.pop(conversation_id, None)

	async def _deliver(self, sid: str, dispatch: _Dispatch) -> None:
		if sid not in self._connections or self._emit is None:
			obs_metrics.inc_broadcast_dropped(dispatch.event)
			return
		try:
			await self._emit(dispatch.event, dispatch.payload, to=sid)
		except Exception:
			obs_metrics.inc_broadcast_dropped(dispatch.event)
			LOGGER.warning("broadcast_delivery_failed", extra={"sid": sid, "event": dispatch.event}, exc_info=True)
			return
		obs_metrics.inc_broadcast_delivered(dispatch.event)

	async def wait_idle(self) -> None:
		"""Wait until every queued dispatch has been attempted."""
		while True:
			pending = [task for task in self._drainers.values() if not task.done()]
			if not pending:
				return
			await asyncio.gather(*pending, return_exceptions=True)

	async def close(self) -> None:
		for task in list(self._drainers.values()):
			task.cancel()
		await asyncio.gather(*list(self._drainers.values()), return_exceptions=True)
		self._drainers.clear()
		self._queues.clear()

	# Errors

	async def emit_error(
		self,
		sid: str,
		exc: Exception,
		*,
		event: str,
		conversation_id: Optional[str] = None,
	) -> Dict[str, Any]:
		"""Send a typed error to the originating connection only."""
		if isinstance(exc, ChatError):
			payload: Dict[str, Any] = public_error(exc).to_payload()
		else:
			LOGGER.error("socket_operation_failed", extra={"sid": sid, "event": event}, exc_info=exc)
			payload = {"kind": "internal", "message": "internal_error"}
		payload["event"] = event
		payload["conversationId"] = conversation_id
		if self._emit is not None:
			try:
				await self._emit(EVENT_ERROR, payload, to=sid)
			except Exception:
				LOGGER.warning("operation_error_emit_failed", extra={"sid": sid, "event": event}, exc_info=True)
		return payload
