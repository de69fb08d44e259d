"""Chat write paths shared by the HTTP routes and the live namespace."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Iterable, List, Mapping, Optional, Tuple

from chatcore.domain.chat.directory import ConversationDirectory
from chatcore.domain.chat.errors import Conflict
from chatcore.domain.chat.history import HistoryService
from chatcore.domain.chat.models import Conversation, Message, ReadReceipt
from chatcore.domain.chat.schemas import (
	ConversationResponse,
	HistoryResponse,
	MessageResponse,
	ReadReceiptResponse,
)
from chatcore.domain.chat.store import ConversationStore, MessageHook
from chatcore.infra import idempotency
from chatcore.infra.auth import AuthenticatedUser
from chatcore.obs import metrics as obs_metrics

if TYPE_CHECKING:  # pragma: no cover - typing only
	from chatcore.domain.chat.broadcaster import LiveBroadcaster

LOGGER = logging.getLogger(__name__)

_IDEMPOTENCY_HANDLER = "chat.send"


def _payload_hash(conversation_id: str, content: object, attachments: Iterable[Mapping[str, object]] | None) -> str:
	body = json.dumps(
		{"conversationId": conversation_id, "content": content, "attachments": list(attachments or [])},
		sort_keys=True,
		default=str,
	)
	return idempotency.hash_payload(body)


async def append_message(
	store: ConversationStore,
	sender_id: str,
	conversation_id: str,
	content: object,
	attachments: Iterable[Mapping[str, object]] | None = None,
	*,
	idempotency_key: Optional[str] = None,
	on_commit: MessageHook | None = None,
) -> Tuple[Message, bool]:
	"""Append once per `(sender, idempotency_key)`.

	Returns `(message, replayed)`; a replay skips `on_commit` because the first
	call already fanned the message out.
	"""
	if not idempotency_key:
		message = await store.append(conversation_id, sender_id, content, attachments, on_commit=on_commit)
		return message, False

	attachment_list = list(attachments or [])
	key = f"{sender_id}:{idempotency_key}"
	payload_hash = _payload_hash(conversation_id, content, attachment_list)
	existing_id = await idempotency.begin(key, _IDEMPOTENCY_HANDLER, payload_hash=payload_hash)
	if existing_id is not None:
		message = await store.get_message(conversation_id, existing_id, sender_id)
		if message is None:
			raise Conflict("idempotency_key_reused")
		return message, True

	async def _append_and_settle() -> Message:
		try:
			message = await store.append(conversation_id, sender_id, content, attachment_list, on_commit=on_commit)
		except Exception:
			await idempotency.release(key, _IDEMPOTENCY_HANDLER)
			raise
		await idempotency.complete(key, _IDEMPOTENCY_HANDLER, message.id, payload_hash=payload_hash)
		return message

	# The key must settle even when the caller goes away mid-append.
	message = await asyncio.shield(_append_and_settle())
	return message, False


class ChatService:
	"""Request/response facade over the directory, store, history and broadcaster.

	Every write hands committed messages to the broadcaster, so HTTP sends reach
	live subscribers exactly like socket sends.
	"""

	def __init__(
		self,
		store: ConversationStore,
		directory: ConversationDirectory,
		history: HistoryService,
		broadcaster: "LiveBroadcaster",
	) -> None:
		self._store = store
		self._directory = directory
		self._history = history
		self._broadcaster = broadcaster

	async def _conversation_response(self, conversation: Conversation) -> ConversationResponse:
		profiles = await self._directory.profiles_for([conversation])
		return ConversationResponse.from_model(conversation, profiles)

	async def create_conversation(
		self,
		auth_user: AuthenticatedUser,
		participant_ids: List[str],
		kind: str,
		display_name: Optional[str] = None,
	) -> Tuple[ConversationResponse, bool]:
		conversation, created = await self._directory.create_conversation(
			auth_user.id, participant_ids, kind, display_name
		)
		return await self._conversation_response(conversation), created

	async def list_conversations(self, auth_user: AuthenticatedUser) -> List[ConversationResponse]:
		conversations = await self._directory.list_conversations(auth_user.id)
		profiles = await self._directory.profiles_for(conversations)
		return [ConversationResponse.from_model(conversation, profiles) for conversation in conversations]

	async def get_conversation(self, auth_user: AuthenticatedUser, conversation_id: str) -> ConversationResponse:
		conversation = await self._directory.get_conversation(conversation_id, auth_user.id)
		return await self._conversation_response(conversation)

	async def get_history(
		self,
		auth_user: AuthenticatedUser,
		conversation_id: str,
		*,
		page: int,
		page_size: Optional[int],
		as_of: Optional[int] = None,
	) -> HistoryResponse:
		history = await self._history.get_history(conversation_id, auth_user.id, page, page_size, as_of=as_of)
		return HistoryResponse.from_page(history)

	async def send_message(
		self,
		auth_user: AuthenticatedUser,
		conversation_id: str,
		content: str,
		attachments: List[dict],
		*,
		idempotency_key: Optional[str] = None,
	) -> Tuple[MessageResponse, bool]:
		message, replayed = await append_message(
			self._store,
			auth_user.id,
			conversation_id,
			content,
			attachments,
			idempotency_key=idempotency_key,
			on_commit=self._broadcaster.publish,
		)
		if not replayed:
			obs_metrics.inc_chat_send("http")
		return MessageResponse.from_model(message), replayed

	async def send_private(
		self,
		auth_user: AuthenticatedUser,
		peer_id: str,
		content: str,
		attachments: List[dict],
		*,
		idempotency_key: Optional[str] = None,
	) -> Tuple[MessageResponse, bool]:
		"""Send to the private conversation with `peer_id`, creating it on first use."""
		conversation = await self._directory.ensure_private(auth_user.id, peer_id)
		return await self.send_message(
			auth_user,
			conversation.id,
			content,
			attachments,
			idempotency_key=idempotency_key,
		)

	async def mark_read(
		self,
		auth_user: AuthenticatedUser,
		conversation_id: str,
		up_to_sequence: int,
	) -> ReadReceiptResponse:
		receipt: ReadReceipt = await self._store.mark_read(
			conversation_id,
			auth_user.id,
			up_to_sequence,
			on_commit=self._broadcaster.publish_receipt,
		)
		if receipt.marked:
			obs_metrics.inc_chat_read()
		return ReadReceiptResponse.from_model(receipt)
