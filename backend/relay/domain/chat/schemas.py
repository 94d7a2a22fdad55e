"""Pydantic schemas for the socket protocol and chat HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import ChatMessage, ConversationSummary, ImageUpload, MessageKind


class CamelModel(BaseModel):
	"""Wire models use camelCase keys; Python code uses snake_case."""

	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

	def to_wire(self) -> dict:
		return self.model_dump(mode="json", by_alias=True)


class JoinPayload(CamelModel):
	user_id: str = Field(..., min_length=1, validation_alias=AliasChoices("userId", "user_id", "identity"))


class SendMessagePayload(CamelModel):
	sender_id: Optional[str] = None
	receiver_id: str = Field(..., min_length=1)
	content: str = ""
	kind: MessageKind = Field(default=MessageKind.TEXT, validation_alias=AliasChoices("type", "kind"))
	image_token: Optional[str] = None
	image_url: Optional[str] = None


class TypingPayload(CamelModel):
	sender_id: Optional[str] = None
	receiver_id: str = Field(..., min_length=1)
	is_typing: bool


class MessageResponse(CamelModel):
	id: str
	sender_id: str
	receiver_id: str
	content: str
	kind: MessageKind = Field(alias="type")
	image_url: Optional[str] = None
	created_at: datetime
	delivered: bool
	read: bool

	@classmethod
	def from_model(cls, message: ChatMessage) -> "MessageResponse":
		return cls(
			id=message.message_id,
			sender_id=message.sender_id,
			receiver_id=message.receiver_id,
			content=message.content,
			kind=message.kind,
			image_url=message.image_url,
			created_at=message.created_at,
			delivered=message.delivered,
			read=message.read,
		)


class SendTextRequest(CamelModel):
	sender_id: str = Field(..., min_length=1)
	receiver_id: str = Field(..., min_length=1)
	content: str = Field(..., min_length=1)


class ImageDraft(CamelModel):
	image_url: str
	content: str
	image_token: str
	kind: MessageKind = Field(default=MessageKind.IMAGE, alias="type")
	sender_id: str
	receiver_id: str


class ImageUploadResponse(CamelModel):
	message: ImageDraft

	@classmethod
	def from_upload(cls, upload: ImageUpload, *, receiver_id: str) -> "ImageUploadResponse":
		return cls(
			message=ImageDraft(
				image_url=upload.url,
				content=upload.url,
				image_token=upload.token,
				sender_id=upload.owner_id,
				receiver_id=receiver_id,
			)
		)


class MarkReadRequest(CamelModel):
	sender_id: str = Field(..., min_length=1)
	receiver_id: str = Field(..., min_length=1)


class MarkReadResponse(CamelModel):
	success: bool = True
	updated: int


class UnreadCountResponse(CamelModel):
	unread_count: int


class ConversationSummaryResponse(CamelModel):
	peer_id: str
	last_message: MessageResponse
	unread_count: int

	@classmethod
	def from_model(cls, summary: ConversationSummary) -> "ConversationSummaryResponse":
		return cls(
			peer_id=summary.peer_id,
			last_message=MessageResponse.from_model(summary.last_message),
			unread_count=summary.unread_count,
		)


class UserPresenceResponse(CamelModel):
	id: str
	online: bool
	last_seen: Optional[datetime] = None


class OnlineUsersResponse(CamelModel):
	users: List[str]
