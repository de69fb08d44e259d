"""Membership guard: the single authorisation check for conversation access."""

from __future__ import annotations

from typing import Optional

from chatcore.domain.chat.errors import Forbidden, NotFound
from chatcore.domain.chat.models import Conversation


def is_member(conversation: Conversation, user_id: str) -> bool:
	return str(user_id) in conversation.participants


def ensure_member(conversation: Optional[Conversation], user_id: str) -> Conversation:
	"""Return the conversation when `user_id` participates, else raise.

	A missing conversation raises `NotFound`; an existing one the caller is not
	part of raises `Forbidden`. Transports decide whether to conceal the
	difference (see `errors.public_error`).
	"""
	if conversation is None:
		raise NotFound("conversation_not_found")
	if not is_member(conversation, user_id):
		raise Forbidden("not_participant")
	return conversation
