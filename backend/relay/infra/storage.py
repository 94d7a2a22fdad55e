"""Image storage backends for the chat image side-channel."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Protocol

CHAT_IMAGE_PREFIX = "chat-images"


class ImageStore(Protocol):
	async def put(self, key: str, data: bytes, mime_type: str) -> str:
		"""Store ``data`` under ``key`` and return a URL that already resolves."""
		...


class LocalImageStore:
	"""Writes images below ``root`` and serves them from ``{base_url}/uploads``."""

	def __init__(self, root: str | Path, base_url: str) -> None:
		self.root = Path(root).resolve()
		self.base_url = base_url.rstrip("/")

	def _target(self, key: str) -> Path:
		target = (self.root / key).resolve()
		# Prevent path traversal
		if not target.is_relative_to(self.root):
			raise ValueError("invalid_key")
		return target

	def url_for(self, key: str) -> str:
		return f"{self.base_url}/uploads/{key}"

	def _write(self, target: Path, data: bytes) -> None:
		target.parent.mkdir(parents=True, exist_ok=True)
		tmp = target.with_suffix(target.suffix + ".part")
		with open(tmp, "wb") as fh:
			fh.write(data)
			fh.flush()
			os.fsync(fh.fileno())
		os.replace(tmp, target)

	async def put(self, key: str, data: bytes, mime_type: str) -> str:
		target = self._target(key)
		await asyncio.to_thread(self._write, target, data)
		return self.url_for(key)
