"""HTTP side-channel for direct messages: image upload, history and read receipts."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status

from relay.domain.chat.models import MessageKind
from relay.domain.chat.schemas import (
	ConversationSummaryResponse,
	ImageUploadResponse,
	MarkReadRequest,
	MarkReadResponse,
	MessageResponse,
	SendTextRequest,
	UnreadCountResponse,
)
from relay.domain.exceptions import MessageValidationError
from relay.domain.realtime.container import RelayServices, get_services
from relay.settings import settings

router = APIRouter(prefix="/messages", tags=["messages"])


@router.post("/send-image", response_model=ImageUploadResponse, status_code=status.HTTP_201_CREATED)
async def send_image_endpoint(
	sender_id: str = Form(..., alias="senderId"),
	receiver_id: str = Form(..., alias="receiverId"),
	image: UploadFile = File(...),
	services: RelayServices = Depends(get_services),
) -> ImageUploadResponse:
	"""Store the image and return a draft carrying the single-use ``imageToken``.

	The client then announces the message over the socket with that token;
	nothing is persisted as a message here.
	"""
	sender_id = sender_id.strip()
	receiver_id = receiver_id.strip()
	if not sender_id or not receiver_id:
		raise MessageValidationError("missing_participant")
	if sender_id == receiver_id:
		raise MessageValidationError("cannot_message_self")
	data = await image.read(settings.image_max_bytes + 1)
	upload = await services.images.upload_image(data, image.content_type or "", owner_id=sender_id)
	return ImageUploadResponse.from_upload(upload, receiver_id=receiver_id)


@router.post("/send", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_text_endpoint(
	payload: SendTextRequest,
	services: RelayServices = Depends(get_services),
) -> MessageResponse:
	message = await services.router.send(payload.sender_id, payload.receiver_id, payload.content, MessageKind.TEXT)
	return MessageResponse.from_model(message)


@router.get("/conversation/{user_id}/{peer_id}", response_model=List[MessageResponse])
async def conversation_endpoint(
	user_id: str,
	peer_id: str,
	page: int = Query(default=1, ge=1),
	limit: int = Query(default=50, ge=1, le=200),
	services: RelayServices = Depends(get_services),
) -> List[MessageResponse]:
	messages = await services.router.conversation(user_id, peer_id, page=page, limit=limit)
	return [MessageResponse.from_model(message) for message in messages]


@router.get("/conversations/{user_id}", response_model=List[ConversationSummaryResponse])
async def conversations_endpoint(
	user_id: str,
	services: RelayServices = Depends(get_services),
) -> List[ConversationSummaryResponse]:
	summaries = await services.router.conversations(user_id)
	return [ConversationSummaryResponse.from_model(summary) for summary in summaries]


@router.post("/mark-read", response_model=MarkReadResponse)
async def mark_read_endpoint(
	payload: MarkReadRequest,
	services: RelayServices = Depends(get_services),
) -> MarkReadResponse:
	updated = await services.router.mark_read(payload.sender_id, payload.receiver_id)
	return MarkReadResponse(updated=updated)


@router.get("/unread/{user_id}", response_model=UnreadCountResponse)
async def unread_count_endpoint(
	user_id: str,
	services: RelayServices = Depends(get_services),
) -> UnreadCountResponse:
	return UnreadCountResponse(unread_count=await services.router.unread_count(user_id))
