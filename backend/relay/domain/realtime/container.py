"""Service container wiring the realtime relay together."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from relay.domain.chat.images import ImageIngestion
from relay.domain.chat.indicators import TypingCoordinator
from relay.domain.chat.repo import ChatRepository
from relay.domain.chat.service import MessageRouter
from relay.domain.users.repo import UserRepository
from relay.infra.storage import ImageStore, LocalImageStore
from relay.settings import settings

from .lifecycle import LifecycleController
from .presence import PresenceTracker
from .registry import ConnectionRegistry


@dataclass(slots=True)
class RelayServices:
	registry: ConnectionRegistry
	presence: PresenceTracker
	lifecycle: LifecycleController
	router: MessageRouter
	typing: TypingCoordinator
	images: ImageIngestion
	chat_repo: ChatRepository
	users_repo: UserRepository


def build(
	*,
	chat_repo: Optional[ChatRepository] = None,
	users_repo: Optional[UserRepository] = None,
	image_store: Optional[ImageStore] = None,
) -> RelayServices:
	chat_repo = chat_repo or ChatRepository()
	users_repo = users_repo or UserRepository()
	store = image_store or LocalImageStore(settings.upload_root, settings.public_base_url)
	registry = ConnectionRegistry()
	presence = PresenceTracker(registry, users_repo)
	images = ImageIngestion(
		store,
		max_bytes=settings.image_max_bytes,
		token_ttl_seconds=settings.image_token_ttl_seconds,
	)
	return RelayServices(
		registry=registry,
		presence=presence,
		lifecycle=LifecycleController(registry, presence, queue_size=settings.outbound_queue_size),
		router=MessageRouter(
			registry,
			chat_repo,
			images,
			max_length=settings.message_max_length,
			delivery_timeout=settings.delivery_timeout_seconds,
		),
		typing=TypingCoordinator(registry),
		images=images,
		chat_repo=chat_repo,
		users_repo=users_repo,
	)


_services: Optional[RelayServices] = None


def get_services() -> RelayServices:
	global _services
	if _services is None:
		_services = build()
	return _services


def configure(services: RelayServices) -> None:
	global _services
	_services = services


def reset() -> RelayServices:
	"""Replace the container with fresh instances (used by tests)."""
	global _services
	_services = build()
	return _services
