"""Message routing: validate, persist, then forward."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

from relay.domain.exceptions import MessageValidationError, PersistenceFailure
from relay.domain.realtime.registry import ConnectionRegistry
from relay.obs import metrics as obs_metrics

from .images import ImageIngestion
from .models import ChatMessage, ConversationSummary, ImageUpload, MessageKind
from .repo import ChatRepository
from .schemas import MessageResponse

_LOG = logging.getLogger(__name__)

EVENT_NEW_MESSAGE = "new_message"
EVENT_MESSAGE_SENT = "message_sent"


def _message_payload(message: ChatMessage) -> dict:
	return MessageResponse.from_model(message).to_wire()


class MessageRouter:
	"""Routes 1:1 messages between connected identities.

	Persistence always happens before forwarding and is shielded from the
	caller's cancellation. Forwarding is best effort: a receiver that is
	offline or goes away mid-write leaves the message undelivered and
	retrievable through history.
	"""

	def __init__(
		self,
		registry: ConnectionRegistry,
		repository: ChatRepository | None = None,
		images: ImageIngestion | None = None,
		*,
		max_length: int = 4000,
		delivery_timeout: float = 5.0,
	) -> None:
		self._registry = registry
		self._repo = repository or ChatRepository()
		self._images = images
		self._max_length = max_length
		self._delivery_timeout = delivery_timeout

	async def send(
		self,
		sender_id: str,
		receiver_id: str,
		content: str,
		kind: MessageKind = MessageKind.TEXT,
		*,
		image_token: str | None = None,
		image_url: str | None = None,
	) -> ChatMessage:
		sender_id = (sender_id or "").strip()
		receiver_id = (receiver_id or "").strip()
		if not sender_id or not receiver_id:
			raise MessageValidationError("missing_participant")
		if sender_id == receiver_id:
			raise MessageValidationError("cannot_message_self")
		kind = MessageKind(kind)

		upload: Optional[ImageUpload] = None
		if kind is MessageKind.IMAGE:
			upload = self._claim_upload(sender_id, image_token, image_url)
			image_url = upload.url
			content = (content or "").strip() or upload.url
		else:
			content = (content or "").strip()
			if not content:
				raise MessageValidationError("empty_content")
			image_url = None
		if len(content) > self._max_length:
			if upload is not None:
				self._images.restore(upload)
			raise MessageValidationError("content_too_long")

		created_at = datetime.now(timezone.utc)
		try:
			message = await asyncio.shield(
				self._repo.create_message(
					sender_id,
					receiver_id,
					content,
					kind,
					created_at,
					image_url=image_url,
				)
			)
		except PersistenceFailure:
			obs_metrics.inc_chat_send_failed("persistence")
			if upload is not None:
				self._images.restore(upload)
			_LOG.error("chat.persist_failed", extra={"sender_id": sender_id, "receiver_id": receiver_id})
			raise
		obs_metrics.inc_chat_send(kind.value)

		if await self._forward(message):
			message = message.with_delivered()
			try:
				await self._repo.mark_delivered(message.message_id)
			except Exception:
				_LOG.warning("chat.mark_delivered_failed", exc_info=True, extra={"message_id": message.message_id})

		sender = self._registry.lookup(sender_id)
		if sender is not None:
			sender.send(EVENT_MESSAGE_SENT, _message_payload(message))
		return message

	def _claim_upload(self, sender_id: str, image_token: str | None, image_url: str | None) -> ImageUpload:
		if not image_token:
			raise MessageValidationError("image_token_required")
		if self._images is None:
			raise MessageValidationError("images_unavailable")
		upload = self._images.resolve(image_token, sender_id)
		if upload is None:
			raise MessageValidationError("invalid_image_token")
		if image_url and image_url != upload.url:
			self._images.restore(upload)
			raise MessageValidationError("image_url_mismatch")
		return upload

	async def _forward(self, message: ChatMessage) -> bool:
		target = self._registry.lookup(message.receiver_id)
		if target is None or not target.is_active:
			return False
		delivered = await target.deliver(
			EVENT_NEW_MESSAGE,
			_message_payload(message.with_delivered()),
			timeout=self._delivery_timeout,
		)
		if delivered:
			obs_metrics.inc_chat_delivered()
		else:
			_LOG.info("chat.delivery_missed", extra={"message_id": message.message_id, "receiver_id": message.receiver_id})
		return delivered

	async def conversation(self, user_id: str, peer_id: str, *, page: int = 1, limit: int = 50) -> List[ChatMessage]:
		"""Oldest-first history between two users; marks ``peer_id``'s messages to ``user_id`` read."""
		page = max(1, page)
		messages = await self._repo.list_conversation(user_id, peer_id, offset=(page - 1) * limit, limit=limit)
		await self.mark_read(peer_id, user_id)
		return messages

	async def conversations(self, user_id: str) -> List[ConversationSummary]:
		return await self._repo.list_conversations(user_id)

	async def mark_read(self, sender_id: str, receiver_id: str) -> int:
		updated = await self._repo.mark_read(sender_id, receiver_id)
		if updated:
			obs_metrics.inc_chat_read()
		return updated

	async def unread_count(self, user_id: str) -> int:
		return await self._repo.unread_count(user_id)
