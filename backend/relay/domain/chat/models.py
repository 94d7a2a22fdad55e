"""Domain models for direct messaging."""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional


class MessageKind(str, enum.Enum):
	TEXT = "text"
	IMAGE = "image"


@dataclass(slots=True, frozen=True)
class ChatMessage:
	message_id: str
	sender_id: str
	receiver_id: str
	content: str
	kind: MessageKind
	created_at: datetime
	image_url: Optional[str] = None
	delivered: bool = False
	read: bool = False

	def with_delivered(self, delivered: bool = True) -> "ChatMessage":
		return replace(self, delivered=delivered)

	def is_participant(self, user_id: str) -> bool:
		return user_id in (self.sender_id, self.receiver_id)

	def peer_of(self, user_id: str) -> str:
		return self.receiver_id if user_id == self.sender_id else self.sender_id


@dataclass(slots=True, frozen=True)
class ConversationSummary:
	peer_id: str
	last_message: ChatMessage
	unread_count: int


@dataclass(slots=True, frozen=True)
class ImageUpload:
	"""Result of a completed image upload; ``token`` gates ``send(kind=image)``."""

	token: str
	url: str
	owner_id: str
	mime_type: str
	size_bytes: int
	created_at: float


@dataclass(slots=True, frozen=True)
class TypingSignal:
	sender_id: str
	receiver_id: str
	is_typing: bool
