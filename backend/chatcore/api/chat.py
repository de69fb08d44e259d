"""FastAPI endpoints for conversations and their message logs."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status

from chatcore.domain.chat.container import get_chat_service
from chatcore.domain.chat.schemas import (
	ConversationResponse,
	CreateConversationRequest,
	HistoryResponse,
	MessageResponse,
	ReadReceiptResponse,
	ReadRequest,
	SendMessageRequest,
)
from chatcore.domain.chat.service import ChatService
from chatcore.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/conversations", tags=["chat"])


def _idempotency_key(request: Request) -> Optional[str]:
	key = getattr(request.state, "idem_key", None)
	return key or None


@router.post("", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
async def create_conversation_endpoint(
	payload: CreateConversationRequest,
	response: Response,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_chat_service),
) -> ConversationResponse:
	conversation, created = await service.create_conversation(
		auth_user, payload.participant_ids, payload.kind, payload.display_name
	)
	if not created:
		response.status_code = status.HTTP_200_OK
	return conversation


@router.get("", response_model=List[ConversationResponse])
async def list_conversations_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_chat_service),
) -> List[ConversationResponse]:
	return await service.list_conversations(auth_user)


@router.get("/{conversation_id}", response_model=ConversationResponse)
async def get_conversation_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_chat_service),
) -> ConversationResponse:
	return await service.get_conversation(auth_user, conversation_id)


@router.get("/{conversation_id}/messages", response_model=HistoryResponse)
async def history_endpoint(
	conversation_id: str,
	page: int = Query(default=1),
	page_size: Optional[int] = Query(default=None, alias="pageSize"),
	as_of: Optional[int] = Query(default=None, alias="asOf"),
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_chat_service),
) -> HistoryResponse:
	return await service.get_history(
		auth_user, conversation_id, page=page, page_size=page_size, as_of=as_of
	)


@router.post("/{conversation_id}/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message_endpoint(
	conversation_id: str,
	payload: SendMessageRequest,
	request: Request,
	response: Response,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_chat_service),
) -> MessageResponse:
	message, replayed = await service.send_message(
		auth_user,
		conversation_id,
		payload.content,
		payload.attachment_dicts(),
		idempotency_key=_idempotency_key(request),
	)
	if replayed:
		response.status_code = status.HTTP_200_OK
	return message


@router.post("/private/{peer_id}/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_private_message_endpoint(
	peer_id: str,
	payload: SendMessageRequest,
	request: Request,
	response: Response,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_chat_service),
) -> MessageResponse:
	message, replayed = await service.send_private(
		auth_user,
		peer_id,
		payload.content,
		payload.attachment_dicts(),
		idempotency_key=_idempotency_key(request),
	)
	if replayed:
		response.status_code = status.HTTP_200_OK
	return message


@router.post("/{conversation_id}/read", response_model=ReadReceiptResponse)
async def mark_read_endpoint(
	conversation_id: str,
	payload: ReadRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
	service: ChatService = Depends(get_chat_service),
) -> ReadReceiptResponse:
	return await service.mark_read(auth_user, conversation_id, payload.up_to_sequence)
