"""Two-phase image ingestion: store the bytes first, then hand out a send token."""

from __future__ import annotations

import logging
import time
from typing import Dict, Optional

import ulid

from relay.domain.exceptions import ImageRejected
from relay.infra.storage import CHAT_IMAGE_PREFIX, ImageStore
from relay.obs import metrics as obs_metrics

from .models import ImageUpload

_LOG = logging.getLogger(__name__)

_EXTENSIONS = {
	"image/jpeg": ".jpg",
	"image/png": ".png",
	"image/gif": ".gif",
	"image/webp": ".webp",
}

_SIGNATURES = {
	"image/jpeg": (b"\xff\xd8\xff",),
	"image/png": (b"\x89PNG\r\n\x1a\n",),
	"image/gif": (b"GIF87a", b"GIF89a"),
}


def _matches_signature(data: bytes, mime_type: str) -> bool:
	if mime_type == "image/webp":
		return data[:4] == b"RIFF" and data[8:12] == b"WEBP"
	return data.startswith(_SIGNATURES[mime_type])


class ImageIngestion:
	"""Validates uploads, stores them and mints single-use tokens.

	A token is only issued after ``ImageStore.put`` returned, so any URL a
	token resolves to is already retrievable when the image message is sent.
	"""

	def __init__(self, store: ImageStore, *, max_bytes: int, token_ttl_seconds: int = 600) -> None:
		self._store = store
		self._max_bytes = max_bytes
		self._ttl = token_ttl_seconds
		self._tokens: Dict[str, ImageUpload] = {}

	async def upload_image(self, data: bytes, mime_type: str, *, owner_id: str) -> ImageUpload:
		mime_type = (mime_type or "").split(";", 1)[0].strip().lower()
		if mime_type not in _EXTENSIONS:
			obs_metrics.inc_image_upload("rejected")
			raise ImageRejected("unsupported_media_type")
		if not data:
			obs_metrics.inc_image_upload("rejected")
			raise ImageRejected("empty_image")
		if len(data) > self._max_bytes:
			obs_metrics.inc_image_upload("rejected")
			raise ImageRejected("image_too_large")
		if not _matches_signature(data, mime_type):
			obs_metrics.inc_image_upload("rejected")
			raise ImageRejected("content_mismatch")

		key = f"{CHAT_IMAGE_PREFIX}/{owner_id}/{ulid.new()}{_EXTENSIONS[mime_type]}"
		try:
			url = await self._store.put(key, data, mime_type)
		except (OSError, ValueError) as exc:
			obs_metrics.inc_image_upload("failed")
			_LOG.warning("images.store_failed", exc_info=True, extra={"owner_id": owner_id})
			raise ImageRejected("storage_unavailable") from exc

		self._purge_expired()
		upload = ImageUpload(
			token=str(ulid.new()),
			url=url,
			owner_id=owner_id,
			mime_type=mime_type,
			size_bytes=len(data),
			created_at=time.time(),
		)
		self._tokens[upload.token] = upload
		obs_metrics.inc_image_upload("stored")
		return upload

	def resolve(self, token: str, owner_id: str, *, now: Optional[float] = None) -> Optional[ImageUpload]:
		"""Consume ``token`` if ``owner_id`` uploaded it and it has not expired."""
		upload = self._tokens.get(token)
		if upload is None or upload.owner_id != owner_id:
			return None
		del self._tokens[token]
		if self._expired(upload, now):
			return None
		return upload

	def restore(self, upload: ImageUpload) -> None:
		"""Put back a token whose send was aborted before persistence."""
		if not self._expired(upload, None):
			self._tokens[upload.token] = upload

	def pending(self) -> int:
		return len(self._tokens)

	def _expired(self, upload: ImageUpload, now: Optional[float]) -> bool:
		current = now if now is not None else time.time()
		return current - upload.created_at > self._ttl

	def _purge_expired(self) -> None:
		now = time.time()
		for token in [token for token, upload in self._tokens.items() if self._expired(upload, now)]:
			del self._tokens[token]
