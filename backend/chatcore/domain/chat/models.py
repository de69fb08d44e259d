"""Domain models for conversations and their message logs."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

KIND_PRIVATE = "private"
KIND_GROUP = "group"
CONVERSATION_KINDS = (KIND_PRIVATE, KIND_GROUP)

SNIPPET_LENGTH = 120


def participant_key(participants: Iterable[str]) -> str:
	"""Order-independent key for a participant set."""
	return "|".join(sorted({str(p) for p in participants}))


@dataclass(slots=True, frozen=True)
class Attachment:
	url: str
	filename: Optional[str]
	mime_type: str
	kind: str
	size_bytes: Optional[int] = None

	def to_dict(self) -> dict:
		return {
			"url": self.url,
			"filename": self.filename,
			"mimeType": self.mime_type,
			"kind": self.kind,
			"sizeBytes": self.size_bytes,
		}


@dataclass(slots=True)
class Message:
	"""One append-only log entry. Only `read_by` ever grows after append."""

	id: str
	conversation_id: str
	sequence: int
	sender_id: str
	content: str
	attachments: Tuple[Attachment, ...]
	timestamp: datetime
	read_by: Dict[str, datetime] = field(default_factory=dict)

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"conversationId": self.conversation_id,
			"sequence": self.sequence,
			"sender": self.sender_id,
			"content": self.content,
			"attachments": [attachment.to_dict() for attachment in self.attachments],
			"readBy": {user_id: read_at.isoformat() for user_id, read_at in self.read_by.items()},
			"timestamp": self.timestamp.isoformat(),
		}

	def snapshot(self) -> "Message":
		return replace(self, read_by=dict(self.read_by))


@dataclass(slots=True, frozen=True)
class MessageSummary:
	"""Denormalised copy of the newest message, kept next to the conversation."""

	sender_id: str
	snippet: str
	sequence: int
	timestamp: datetime

	@classmethod
	def from_message(cls, message: Message) -> "MessageSummary":
		return cls(
			sender_id=message.sender_id,
			snippet=message.content[:SNIPPET_LENGTH],
			sequence=message.sequence,
			timestamp=message.timestamp,
		)

	def to_dict(self) -> dict:
		return {
			"sender": self.sender_id,
			"content": self.snippet,
			"sequence": self.sequence,
			"timestamp": self.timestamp.isoformat(),
		}


@dataclass(slots=True)
class Conversation:
	id: str
	kind: str
	participants: FrozenSet[str]
	created_at: datetime
	updated_at: datetime
	display_name: Optional[str] = None
	last_seq: int = 0
	last_message: Optional[MessageSummary] = None

	@property
	def participant_key(self) -> str:
		return participant_key(self.participants)

	@property
	def activity_at(self) -> datetime:
		if self.last_message is not None:
			return self.last_message.timestamp
		return self.created_at

	def is_private(self) -> bool:
		return self.kind == KIND_PRIVATE

	def snapshot(self) -> "Conversation":
		return replace(self)


@dataclass(slots=True, frozen=True)
class UserProfile:
	id: str
	display_name: Optional[str] = None
	avatar_url: Optional[str] = None

	def to_dict(self) -> dict:
		return {"id": self.id, "displayName": self.display_name, "avatarUrl": self.avatar_url}


@dataclass(slots=True)
class HistoryPage:
	messages: List[Message]
	page: int
	page_size: int
	total: int
	has_more: bool


@dataclass(slots=True, frozen=True)
class ReadReceipt:
	conversation_id: str
	user_id: str
	up_to_sequence: int
	marked: int
	read_at: datetime

	def to_event(self) -> dict:
		return {
			"conversationId": self.conversation_id,
			"userId": self.user_id,
			"upToSequence": self.up_to_sequence,
			"readAt": self.read_at.isoformat(),
		}
