"""Conversation store: the only code path allowed to mutate a message log."""

from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime, timezone
from typing import Callable, Iterable, Mapping, Optional, Tuple

from chatcore.domain.chat import attachments as attachment_rules
from chatcore.domain.chat import membership
from chatcore.domain.chat.errors import InvalidArgument
from chatcore.domain.chat.models import Attachment, Conversation, Message, ReadReceipt
from chatcore.domain.chat.repository import ConversationRepository
from chatcore.settings import settings

LOGGER = logging.getLogger(__name__)

MessageHook = Callable[[Message], None]
ReceiptHook = Callable[[ReadReceipt], None]


def validate_content(content: object) -> str:
	if not isinstance(content, str):
		raise InvalidArgument("content_required")
	text = content.strip()
	if not text:
		raise InvalidArgument("content_required")
	if len(text) > settings.message_max_length:
		raise InvalidArgument("content_too_long")
	return text


class ConversationStore:
	"""Serialises appends per conversation while leaving conversations independent.

	Each conversation gets its own `asyncio.Lock`; the locks are held weakly so
	idle conversations do not accumulate entries.
	"""

	def __init__(self, repository: ConversationRepository | None = None) -> None:
		self._repo = repository or ConversationRepository()
		self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

	@property
	def repository(self) -> ConversationRepository:
		return self._repo

	def _lock_for(self, conversation_id: str) -> asyncio.Lock:
		lock = self._locks.get(conversation_id)
		if lock is None:
			lock = asyncio.Lock()
			self._locks[conversation_id] = lock
		return lock

	async def load(self, conversation_id: str) -> Optional[Conversation]:
		return await self._repo.get_conversation(conversation_id)

	async def load_for_member(self, conversation_id: str, user_id: str) -> Conversation:
		conversation = await self._repo.get_conversation(conversation_id)
		return membership.ensure_member(conversation, user_id)

	async def append(
		self,
		conversation_id: str,
		sender_id: str,
		content: object,
		attachments: Iterable[Mapping[str, object]] | None = None,
		*,
		on_commit: MessageHook | None = None,
	) -> Message:
		"""Validate, authorise and append one message.

		`on_commit` runs synchronously after the message is durable and before the
		conversation's ordering scope is released, so hooks observe messages in
		sequence order. It must not block.
		"""
		text = validate_content(content)
		normalized = tuple(attachment_rules.normalize_attachments(attachments))
		conversation = await self.load_for_member(conversation_id, sender_id)
		# Shielded: once persistence starts, caller cancellation must not lose the append.
		return await asyncio.shield(
			self._append_ordered(conversation.id, str(sender_id), text, normalized, on_commit)
		)

	async def _append_ordered(
		self,
		conversation_id: str,
		sender_id: str,
		text: str,
		attachments: Tuple[Attachment, ...],
		on_commit: MessageHook | None,
	) -> Message:
		lock = self._lock_for(conversation_id)
		async with lock:
			message, _ = await self._repo.append_message(
				conversation_id,
				sender_id=sender_id,
				content=text,
				attachments=attachments,
				timestamp=datetime.now(timezone.utc),
			)
			if on_commit is not None:
				try:
					on_commit(message)
				except Exception:
					LOGGER.exception(
						"chat_commit_hook_failed",
						extra={"conversation_id": conversation_id, "sequence": message.sequence},
					)
			return message

	async def mark_read(
		self,
		conversation_id: str,
		user_id: str,
		up_to_sequence: int,
		*,
		on_commit: ReceiptHook | None = None,
	) -> ReadReceipt:
		"""Mark every message with sequence <= `up_to_sequence` as read by `user_id`.

		Re-marking is a no-op; the first read time per user is kept.
		"""
		if isinstance(up_to_sequence, bool) or not isinstance(up_to_sequence, int) or up_to_sequence < 0:
			raise InvalidArgument("invalid_sequence")
		conversation = await self.load_for_member(conversation_id, user_id)
		up_to = min(up_to_sequence, conversation.last_seq)
		read_at = datetime.now(timezone.utc)
		# Same ordering scope as appends so receipts fan out in log order.
		async with self._lock_for(conversation.id):
			marked = await self._repo.mark_read(conversation.id, str(user_id), up_to, read_at)
			receipt = ReadReceipt(
				conversation_id=conversation.id,
				user_id=str(user_id),
				up_to_sequence=up_to,
				marked=marked,
				read_at=read_at,
			)
			if marked and on_commit is not None:
				try:
					on_commit(receipt)
				except Exception:
					LOGGER.exception("chat_commit_hook_failed", extra={"conversation_id": conversation.id})
		return receipt

	async def get_message(self, conversation_id: str, message_id: str, user_id: str) -> Optional[Message]:
		conversation = await self.load_for_member(conversation_id, user_id)
		return await self._repo.get_message(conversation.id, message_id)
