import time

import pytest

from relay.domain.chat.images import ImageIngestion
from relay.domain.chat.indicators import TypingCoordinator
from relay.domain.exceptions import ImageRejected
from relay.domain.realtime.connection import Connection
from relay.domain.realtime.registry import ConnectionRegistry
from relay.infra.storage import LocalImageStore

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
GIF_BYTES = b"GIF89a" + b"\x00" * 32


class _Recorder:
	def __init__(self) -> None:
		self.events = []

	async def __call__(self, event, payload):
		self.events.append((event, payload))


@pytest.mark.asyncio
async def test_typing_relays_in_order_to_online_receiver():
	registry = ConnectionRegistry()
	bob_events = _Recorder()
	bob = Connection("sid-bob", emitter=bob_events)
	bob.bind("bob")
	bob.activate()
	await registry.register("bob", bob)
	typing = TypingCoordinator(registry)

	assert typing.set_typing("alice", "bob", True)
	assert typing.set_typing("alice", "bob", False)
	await bob.drain()

	assert bob_events.events == [
		("user_typing", {"senderId": "alice", "isTyping": True}),
		("user_typing", {"senderId": "alice", "isTyping": False}),
	]


def test_typing_to_offline_receiver_is_dropped():
	typing = TypingCoordinator(ConnectionRegistry())

	assert typing.set_typing("alice", "bob", True) is False
	assert typing.set_typing("alice", "alice", True) is False


@pytest.mark.asyncio
async def test_upload_writes_file_before_issuing_token(tmp_path):
	store = LocalImageStore(tmp_path, "http://testserver")
	images = ImageIngestion(store, max_bytes=1024)

	upload = await images.upload_image(PNG_BYTES, "image/png", owner_id="alice")

	key = upload.url.split("/uploads/", 1)[1]
	assert key.startswith("chat-images/alice/") and key.endswith(".png")
	assert (tmp_path / key).read_bytes() == PNG_BYTES
	assert upload.size_bytes == len(PNG_BYTES)
	assert images.pending() == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
	("data", "mime_type", "reason"),
	[
		(PNG_BYTES, "application/pdf", "unsupported_media_type"),
		(b"", "image/png", "empty_image"),
		(PNG_BYTES * 100, "image/png", "image_too_large"),
		(GIF_BYTES, "image/png", "content_mismatch"),
	],
)
async def test_upload_rejections(tmp_path, data, mime_type, reason):
	images = ImageIngestion(LocalImageStore(tmp_path, "http://testserver"), max_bytes=1024)

	with pytest.raises(ImageRejected) as excinfo:
		await images.upload_image(data, mime_type, owner_id="alice")

	assert excinfo.value.detail == reason
	assert images.pending() == 0


@pytest.mark.asyncio
async def test_token_is_single_use_and_expires(tmp_path):
	images = ImageIngestion(LocalImageStore(tmp_path, "http://testserver"), max_bytes=1024, token_ttl_seconds=60)
	first = await images.upload_image(GIF_BYTES, "image/gif", owner_id="alice")
	second = await images.upload_image(GIF_BYTES, "image/gif", owner_id="alice")

	assert images.resolve(first.token, "bob") is None
	assert images.resolve(first.token, "alice") == first
	assert images.resolve(first.token, "alice") is None
	assert images.resolve(second.token, "alice", now=time.time() + 120) is None


def test_local_store_rejects_path_traversal(tmp_path):
	store = LocalImageStore(tmp_path / "uploads", "http://testserver")

	with pytest.raises(ValueError):
		store._target("../outside.png")
