"""Shared Redis handle for rate limiting and health probes.

The relay keeps no authoritative state in Redis, so the client is built on
first use and every caller tolerates it being unreachable. ``redis_client``
is a stable proxy: tests swap in fakeredis via ``set_redis_client`` and
modules that imported the proxy earlier follow the swap.
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as redis

from relay.settings import settings

_LOG = logging.getLogger(__name__)


class RedisProxy:
	"""Forwards attribute access to a lazily created ``redis.asyncio`` client."""

	def __init__(self, url: str) -> None:
		self._url = url
		self._client: Optional[redis.Redis] = None

	@property
	def client(self) -> redis.Redis:
		if self._client is None:
			self._client = redis.from_url(self._url, decode_responses=True, health_check_interval=30)
		return self._client

	def set_client(self, client: Optional[redis.Redis]) -> None:
		self._client = client

	async def close(self) -> None:
		client, self._client = self._client, None
		if client is None:
			return
		try:
			await client.aclose()
		except (OSError, redis.RedisError):
			_LOG.warning("redis.close_failed", exc_info=True)

	def __getattr__(self, item):
		return getattr(self.client, item)


redis_client: RedisProxy = RedisProxy(settings.redis_url)


def set_redis_client(client: Optional[redis.Redis]) -> None:
	redis_client.set_client(client)


async def close_redis() -> None:
	await redis_client.close()
