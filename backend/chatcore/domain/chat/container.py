"""Process-wide wiring of the chat core object graph."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from chatcore.domain.chat.broadcaster import LiveBroadcaster
from chatcore.domain.chat.directory import ConversationDirectory
from chatcore.domain.chat.history import HistoryService
from chatcore.domain.chat.repository import ConversationRepository
from chatcore.domain.chat.service import ChatService
from chatcore.domain.chat.store import ConversationStore
from chatcore.domain.chat.users import UserDirectory


@dataclass(slots=True)
class ChatCore:
	repository: ConversationRepository
	store: ConversationStore
	users: UserDirectory
	directory: ConversationDirectory
	history: HistoryService
	broadcaster: LiveBroadcaster
	service: ChatService


def build_chat(
	*,
	repository: ConversationRepository | None = None,
	users: UserDirectory | None = None,
) -> ChatCore:
	repository = repository or ConversationRepository()
	users = users or UserDirectory()
	store = ConversationStore(repository)
	directory = ConversationDirectory(store, users)
	history = HistoryService(store)
	broadcaster = LiveBroadcaster(store)
	service = ChatService(store, directory, history, broadcaster)
	return ChatCore(
		repository=repository,
		store=store,
		users=users,
		directory=directory,
		history=history,
		broadcaster=broadcaster,
		service=service,
	)


_chat: Optional[ChatCore] = None


def get_chat() -> ChatCore:
	global _chat
	if _chat is None:
		_chat = build_chat()
	return _chat


def get_chat_service() -> ChatService:
	"""FastAPI dependency."""
	return get_chat().service


async def reset_chat() -> None:
	"""Drop the current graph (and its in-memory state); used by tests and shutdown."""
	global _chat
	if _chat is not None:
		await _chat.broadcaster.close()
	_chat = None
