"""Pydantic schemas for the chat HTTP API (camelCase on the wire)."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import Attachment, Conversation, HistoryPage, Message, MessageSummary, ReadReceipt, UserProfile


class _CamelModel(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AttachmentPayload(_CamelModel):
	url: str = Field(..., min_length=1)
	filename: Optional[str] = None
	mime_type: str = Field(..., examples=["image/png"])
	size_bytes: Optional[int] = Field(default=None, ge=0)


class AttachmentResponse(_CamelModel):
	url: str
	filename: Optional[str] = None
	mime_type: str
	kind: str
	size_bytes: Optional[int] = None

	@classmethod
	def from_model(cls, attachment: Attachment) -> "AttachmentResponse":
		return cls(
			url=attachment.url,
			filename=attachment.filename,
			mime_type=attachment.mime_type,
			kind=attachment.kind,
			size_bytes=attachment.size_bytes,
		)


class SendMessageRequest(_CamelModel):
	content: str = Field(..., description="Message text; surrounding whitespace is trimmed")
	attachments: List[AttachmentPayload] = Field(default_factory=list)

	def attachment_dicts(self) -> List[dict]:
		return [item.model_dump(by_alias=True) for item in self.attachments]


class MessageResponse(_CamelModel):
	id: str
	conversation_id: str
	sequence: int
	sender: str
	content: str
	attachments: List[AttachmentResponse]
	read_by: Dict[str, datetime]
	timestamp: datetime

	@classmethod
	def from_model(cls, message: Message) -> "MessageResponse":
		return cls(
			id=message.id,
			conversation_id=message.conversation_id,
			sequence=message.sequence,
			sender=message.sender_id,
			content=message.content,
			attachments=[AttachmentResponse.from_model(item) for item in message.attachments],
			read_by=dict(message.read_by),
			timestamp=message.timestamp,
		)


class MessageSummaryResponse(_CamelModel):
	sender: str
	content: str
	sequence: int
	timestamp: datetime

	@classmethod
	def from_model(cls, summary: MessageSummary) -> "MessageSummaryResponse":
		return cls(
			sender=summary.sender_id,
			content=summary.snippet,
			sequence=summary.sequence,
			timestamp=summary.timestamp,
		)


class ParticipantResponse(_CamelModel):
	id: str
	display_name: Optional[str] = None
	avatar_url: Optional[str] = None

	@classmethod
	def from_profile(cls, user_id: str, profile: Optional[UserProfile]) -> "ParticipantResponse":
		if profile is None:
			return cls(id=user_id)
		return cls(id=profile.id, display_name=profile.display_name, avatar_url=profile.avatar_url)


class CreateConversationRequest(_CamelModel):
	participant_ids: List[str] = Field(..., min_length=1)
	kind: Literal["private", "group"] = "private"
	display_name: Optional[str] = None


class ConversationResponse(_CamelModel):
	id: str
	kind: str
	display_name: Optional[str] = None
	participants: List[ParticipantResponse]
	last_message: Optional[MessageSummaryResponse] = None
	created_at: datetime
	updated_at: datetime

	@classmethod
	def from_model(
		cls,
		conversation: Conversation,
		profiles: Mapping[str, UserProfile] | None = None,
	) -> "ConversationResponse":
		profiles = profiles or {}
		return cls(
			id=conversation.id,
			kind=conversation.kind,
			display_name=conversation.display_name,
			participants=[
				ParticipantResponse.from_profile(user_id, profiles.get(user_id))
				for user_id in sorted(conversation.participants)
			],
			last_message=(
				MessageSummaryResponse.from_model(conversation.last_message)
				if conversation.last_message is not None
				else None
			),
			created_at=conversation.created_at,
			updated_at=conversation.updated_at,
		)


class HistoryPagination(_CamelModel):
	page: int
	page_size: int
	total: int
	has_more: bool


class HistoryResponse(_CamelModel):
	messages: List[MessageResponse]
	pagination: HistoryPagination

	@classmethod
	def from_page(cls, page: HistoryPage) -> "HistoryResponse":
		return cls(
			messages=[MessageResponse.from_model(message) for message in page.messages],
			pagination=HistoryPagination(
				page=page.page,
				page_size=page.page_size,
				total=page.total,
				has_more=page.has_more,
			),
		)


class ReadRequest(_CamelModel):
	up_to_sequence: int = Field(..., ge=0)


class ReadReceiptResponse(_CamelModel):
	conversation_id: str
	user_id: str
	up_to_sequence: int
	marked: int
	read_at: datetime

	@classmethod
	def from_model(cls, receipt: ReadReceipt) -> "ReadReceiptResponse":
		return cls(
			conversation_id=receipt.conversation_id,
			user_id=receipt.user_id,
			up_to_sequence=receipt.up_to_sequence,
			marked=receipt.marked,
			read_at=receipt.read_at,
		)
