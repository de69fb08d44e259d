"""Persistence for conversations and message logs.

Backed by asyncpg when a pool is reachable, with an in-process memory store
fallback that keeps the same semantics (used by tests and local tools).
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Tuple, TypeVar

import asyncpg
import ulid

from chatcore.domain.chat.errors import NotFound, Unavailable
from chatcore.domain.chat.models import (
	KIND_PRIVATE,
	Attachment,
	Conversation,
	Message,
	MessageSummary,
	participant_key,
)
from chatcore.infra.postgres import get_pool
from chatcore.settings import settings

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class _MemoryStore:
	"""Fallback store used when Postgres is unavailable.

	Every method mutates without awaiting, so each call is atomic on the event loop.
	"""

	def __init__(self) -> None:
		self.conversations: Dict[str, Conversation] = {}
		self.private_index: Dict[str, str] = {}
		self.messages: Dict[str, List[Message]] = {}

	def insert_conversation(self, conversation: Conversation) -> Tuple[Conversation, bool]:
		if conversation.is_private():
			existing_id = self.private_index.get(conversation.participant_key)
			if existing_id is not None:
				return self.conversations[existing_id].snapshot(), False
			self.private_index[conversation.participant_key] = conversation.id
		self.conversations[conversation.id] = conversation
		self.messages[conversation.id] = []
		return conversation.snapshot(), True

	def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
		conversation = self.conversations.get(conversation_id)
		return conversation.snapshot() if conversation else None

	def find_private(self, key: str) -> Optional[Conversation]:
		conversation_id = self.private_index.get(key)
		return self.get_conversation(conversation_id) if conversation_id else None

	def list_for_user(self, user_id: str) -> List[Conversation]:
		return [c.snapshot() for c in self.conversations.values() if user_id in c.participants]

	def append(
		self,
		conversation_id: str,
		sender_id: str,
		content: str,
		attachments: Tuple[Attachment, ...],
		timestamp: datetime,
	) -> Tuple[Message, Conversation]:
		conversation = self.conversations.get(conversation_id)
		if conversation is None:
			raise NotFound("conversation_not_found")
		log = self.messages.setdefault(conversation_id, [])
		message = Message(
			id=str(ulid.new()),
			conversation_id=conversation_id,
			sequence=conversation.last_seq + 1,
			sender_id=sender_id,
			content=content,
			attachments=attachments,
			timestamp=timestamp,
			read_by={sender_id: timestamp},
		)
		log.append(message)
		conversation.last_seq = message.sequence
		conversation.last_message = MessageSummary.from_message(message)
		conversation.updated_at = timestamp
		return message.snapshot(), conversation.snapshot()

	def slice(self, conversation_id: str, start: int, end: int) -> List[Message]:
		log = self.messages.get(conversation_id, [])
		return [message.snapshot() for message in log[start:end]]

	def get_message(self, conversation_id: str, message_id: str) -> Optional[Message]:
		for message in self.messages.get(conversation_id, []):
			if message.id == message_id:
				return message.snapshot()
		return None

	def mark_read(self, conversation_id: str, user_id: str, up_to: int, read_at: datetime) -> int:
		marked = 0
		for message in self.messages.get(conversation_id, [])[:up_to]:
			if user_id not in message.read_by:
				message.read_by[user_id] = read_at
				marked += 1
		return marked


def _load_json(raw: Any, default: Any) -> Any:
	if raw is None:
		return default
	if isinstance(raw, str):
		return json.loads(raw) if raw else default
	return raw


def _row_to_conversation(row: asyncpg.Record) -> Conversation:
	last_message = None
	if row["last_message_at"] is not None:
		last_message = MessageSummary(
			sender_id=str(row["last_sender_id"]),
			snippet=row["last_snippet"] or "",
			sequence=int(row["last_seq"]),
			timestamp=row["last_message_at"],
		)
	return Conversation(
		id=str(row["id"]),
		kind=row["kind"],
		participants=frozenset(str(p) for p in row["participants"]),
		display_name=row["display_name"],
		created_at=row["created_at"],
		updated_at=row["updated_at"],
		last_seq=int(row["last_seq"]),
		last_message=last_message,
	)


def _row_to_message(row: asyncpg.Record) -> Message:
	attachments = tuple(Attachment(**item) for item in _load_json(row["attachments"], []))
	read_by = {
		str(user_id): datetime.fromisoformat(read_at)
		for user_id, read_at in _load_json(row["read_by"], {}).items()
	}
	return Message(
		id=str(row["id"]),
		conversation_id=str(row["conversation_id"]),
		sequence=int(row["seq"]),
		sender_id=str(row["sender_id"]),
		content=row["content"],
		attachments=attachments,
		timestamp=row["created_at"],
		read_by=read_by,
	)


class ConversationRepository:
	"""Repository backed by asyncpg with an in-memory fallback."""

	def __init__(self, memory: _MemoryStore | None = None) -> None:
		self._memory = memory or _MemoryStore()
		self._pool_checked = False
		self._pool: Optional[asyncpg.Pool] = None

	async def _pool_or_none(self) -> Optional[asyncpg.Pool]:
		if self._pool_checked:
			return self._pool
		self._pool_checked = True
		try:
			pool = await get_pool()
		except AssertionError:
			pool = None
		except Exception:
			LOGGER.warning("chat_repository_memory_fallback", exc_info=True)
			pool = None
		self._pool = pool
		return pool

	async def _bounded(self, awaitable: Awaitable[T]) -> T:
		try:
			return await asyncio.wait_for(awaitable, timeout=settings.storage_timeout_seconds)
		except asyncio.TimeoutError:
			LOGGER.warning("chat_storage_timeout")
			raise Unavailable("storage_timeout") from None
		except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
			LOGGER.warning("chat_storage_error", exc_info=True)
			raise Unavailable("storage_unavailable") from exc

	async def insert_conversation(
		self,
		*,
		kind: str,
		participants: Iterable[str],
		display_name: Optional[str],
		created_at: datetime,
	) -> Tuple[Conversation, bool]:
		"""Insert a conversation; private ones collapse onto an existing participant pair."""
		conversation = Conversation(
			id=str(ulid.new()),
			kind=kind,
			participants=frozenset(participants),
			display_name=display_name,
			created_at=created_at,
			updated_at=created_at,
		)
		pool = await self._pool_or_none()
		if pool is None:
			return self._memory.insert_conversation(conversation)
		return await self._bounded(self._insert_conversation_pg(pool, conversation))

	async def _insert_conversation_pg(self, pool: asyncpg.Pool, conversation: Conversation) -> Tuple[Conversation, bool]:
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				INSERT INTO chat_conversations (
					id, kind, display_name, participants, participant_key, last_seq, created_at, updated_at
				)
				VALUES ($1,$2,$3,$4,$5,0,$6,$6)
				ON CONFLICT (participant_key) WHERE kind = 'private' DO NOTHING
				RETURNING *
				""",
				conversation.id,
				conversation.kind,
				conversation.display_name,
				sorted(conversation.participants),
				conversation.participant_key,
				conversation.created_at,
			)
			if row is not None:
				return _row_to_conversation(row), True
			existing = await conn.fetchrow(
				"SELECT * FROM chat_conversations WHERE participant_key=$1 AND kind='private'",
				conversation.participant_key,
			)
			return _row_to_conversation(existing), False

	async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
		pool = await self._pool_or_none()
		if pool is None:
			return self._memory.get_conversation(conversation_id)
		row = await self._bounded(
			pool.fetchrow("SELECT * FROM chat_conversations WHERE id=$1", conversation_id)
		)
		return _row_to_conversation(row) if row else None

	async def find_private(self, participants: Iterable[str]) -> Optional[Conversation]:
		key = participant_key(participants)
		pool = await self._pool_or_none()
		if pool is None:
			return self._memory.find_private(key)
		row = await self._bounded(
			pool.fetchrow(
				"SELECT * FROM chat_conversations WHERE participant_key=$1 AND kind=$2",
				key,
				KIND_PRIVATE,
			)
		)
		return _row_to_conversation(row) if row else None

	async def list_for_user(self, user_id: str) -> List[Conversation]:
		pool = await self._pool_or_none()
		if pool is None:
			return self._memory.list_for_user(user_id)
		rows = await self._bounded(
			pool.fetch(
				"SELECT * FROM chat_conversations WHERE $1 = ANY(participants)",
				user_id,
			)
		)
		return [_row_to_conversation(row) for row in rows]

	async def append_message(
		self,
		conversation_id: str,
		*,
		sender_id: str,
		content: str,
		attachments: Tuple[Attachment, ...],
		timestamp: datetime,
	) -> Tuple[Message, Conversation]:
		"""Assign the next sequence, persist the message and refresh the summary atomically."""
		pool = await self._pool_or_none()
		if pool is None:
			return self._memory.append(conversation_id, sender_id, content, attachments, timestamp)
		return await self._bounded(
			self._append_pg(pool, conversation_id, sender_id, content, attachments, timestamp)
		)

	async def _append_pg(
		self,
		pool: asyncpg.Pool,
		conversation_id: str,
		sender_id: str,
		content: str,
		attachments: Tuple[Attachment, ...],
		timestamp: datetime,
	) -> Tuple[Message, Conversation]:
		async with pool.acquire() as conn:
			async with conn.transaction():
				row = await conn.fetchrow(
					"SELECT last_seq FROM chat_conversations WHERE id=$1 FOR UPDATE",
					conversation_id,
				)
				if row is None:
					raise NotFound("conversation_not_found")
				seq = int(row["last_seq"]) + 1
				message = Message(
					id=str(ulid.new()),
					conversation_id=conversation_id,
					sequence=seq,
					sender_id=sender_id,
					content=content,
					attachments=attachments,
					timestamp=timestamp,
					read_by={sender_id: timestamp},
				)
				summary = MessageSummary.from_message(message)
				await conn.execute(
					"""
					INSERT INTO chat_messages (
						id, conversation_id, seq, sender_id, content, attachments, read_by, created_at
					)
					VALUES ($1,$2,$3,$4,$5,$6::jsonb,$7::jsonb,$8)
					""",
					message.id,
					conversation_id,
					seq,
					sender_id,
					content,
					json.dumps([asdict(item) for item in attachments]),
					json.dumps({sender_id: timestamp.isoformat()}),
					timestamp,
				)
				updated = await conn.fetchrow(
					"""
					UPDATE chat_conversations
					SET last_seq=$2, last_sender_id=$3, last_snippet=$4, last_message_at=$5, updated_at=$5
					WHERE id=$1
					RETURNING *
					""",
					conversation_id,
					seq,
					sender_id,
					summary.snippet,
					timestamp,
				)
				return message, _row_to_conversation(updated)

	async def slice_messages(self, conversation_id: str, start: int, end: int) -> List[Message]:
		"""Return log entries `[start, end)` by zero-based position, oldest first."""
		if end <= start:
			return []
		pool = await self._pool_or_none()
		if pool is None:
			return self._memory.slice(conversation_id, start, end)
		# Sequences are gapless from 1, so position i holds seq i + 1.
		rows = await self._bounded(
			pool.fetch(
				"""
				SELECT * FROM chat_messages
				WHERE conversation_id=$1 AND seq > $2 AND seq <= $3
				ORDER BY seq ASC
				""",
				conversation_id,
				start,
				end,
			)
		)
		return [_row_to_message(row) for row in rows]

	async def get_message(self, conversation_id: str, message_id: str) -> Optional[Message]:
		pool = await self._pool_or_none()
		if pool is None:
			return self._memory.get_message(conversation_id, message_id)
		row = await self._bounded(
			pool.fetchrow(
				"SELECT * FROM chat_messages WHERE conversation_id=$1 AND id=$2",
				conversation_id,
				message_id,
			)
		)
		return _row_to_message(row) if row else None

	async def mark_read(self, conversation_id: str, user_id: str, up_to: int, read_at: datetime) -> int:
		"""Set `read_by[user_id]` on messages with seq <= up_to that lack it; return how many changed."""
		if up_to <= 0:
			return 0
		pool = await self._pool_or_none()
		if pool is None:
			return self._memory.mark_read(conversation_id, user_id, up_to, read_at)
		status = await self._bounded(
			pool.execute(
				"""
				UPDATE chat_messages
				SET read_by = read_by || jsonb_build_object($2::text, $4::text)
				WHERE conversation_id=$1 AND seq <= $3 AND NOT (read_by ? $2)
				""",
				conversation_id,
				user_id,
				up_to,
				read_at.isoformat(),
			)
		)
		try:
			return int(str(status).rsplit(" ", 1)[-1])
		except ValueError:
			return 0
