"""Conversation directory: creation with private-pair deduplication and listing."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from chatcore.domain.chat.errors import InvalidArgument
from chatcore.domain.chat.models import (
	CONVERSATION_KINDS,
	KIND_GROUP,
	KIND_PRIVATE,
	Conversation,
	UserProfile,
)
from chatcore.domain.chat.store import ConversationStore
from chatcore.domain.chat.users import UserDirectory
from chatcore.obs import metrics as obs_metrics

LOGGER = logging.getLogger(__name__)

DISPLAY_NAME_MAX_LENGTH = 80


def normalize_participants(creator_id: str, participant_ids: Iterable[object]) -> frozenset[str]:
	"""Set union of the requested ids and the creator; duplicates collapse."""
	ids: set[str] = set()
	for raw in participant_ids:
		if not isinstance(raw, str) or not raw.strip():
			raise InvalidArgument("invalid_participants")
		ids.add(raw.strip())
	ids.add(str(creator_id))
	return frozenset(ids)


class ConversationDirectory:
	def __init__(self, store: ConversationStore, users: UserDirectory | None = None) -> None:
		self._store = store
		self._users = users or UserDirectory()

	@property
	def users(self) -> UserDirectory:
		return self._users

	async def create_conversation(
		self,
		creator_id: str,
		participant_ids: Iterable[object],
		kind: str = KIND_PRIVATE,
		display_name: Optional[str] = None,
	) -> Tuple[Conversation, bool]:
		"""Create a conversation, or return the existing private one for the same pair.

		Returns `(conversation, created)`. Group conversations are never deduplicated.
		"""
		if kind not in CONVERSATION_KINDS:
			raise InvalidArgument("invalid_kind")
		participants = normalize_participants(creator_id, participant_ids)
		if len(participants) < 2:
			raise InvalidArgument("too_few_participants")
		if kind == KIND_PRIVATE and len(participants) != 2:
			raise InvalidArgument("private_requires_two_participants")
		name: Optional[str] = None
		if kind == KIND_GROUP and display_name is not None:
			name = display_name.strip() or None
			if name is not None and len(name) > DISPLAY_NAME_MAX_LENGTH:
				raise InvalidArgument("display_name_too_long")
		unknown = await self._users.missing(participants - {str(creator_id)})
		if unknown:
			raise InvalidArgument("unknown_participants")
		repo = self._store.repository
		if kind == KIND_PRIVATE:
			existing = await repo.find_private(participants)
			if existing is not None:
				return existing, False
		conversation, created = await repo.insert_conversation(
			kind=kind,
			participants=participants,
			display_name=name,
			created_at=datetime.now(timezone.utc),
		)
		if created:
			obs_metrics.inc_conversation_created(kind)
			LOGGER.info("chat_conversation_created", extra={"conversation_id": conversation.id, "kind": kind})
		return conversation, created

	async def ensure_private(self, user_id: str, peer_id: str) -> Conversation:
		if str(user_id) == str(peer_id).strip():
			raise InvalidArgument("cannot_message_self")
		conversation, _ = await self.create_conversation(user_id, [peer_id], KIND_PRIVATE)
		return conversation

	async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation:
		return await self._store.load_for_member(conversation_id, user_id)

	async def list_conversations(self, user_id: str) -> List[Conversation]:
		"""Newest activity first; each position reflects the summary read at listing time."""
		conversations = await self._store.repository.list_for_user(str(user_id))
		return sorted(conversations, key=lambda c: (c.activity_at, c.id), reverse=True)

	async def profiles_for(self, conversations: Iterable[Conversation]) -> Dict[str, UserProfile]:
		user_ids: set[str] = set()
		for conversation in conversations:
			user_ids.update(conversation.participants)
		return await self._users.get_profiles(user_ids)
