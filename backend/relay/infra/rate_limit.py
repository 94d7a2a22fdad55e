"""Simple Redis-backed rate limiting utilities."""

from __future__ import annotations

import logging
import math
import time
from typing import Optional

from redis.exceptions import RedisError

from relay.infra.redis import redis_client

_LOG = logging.getLogger(__name__)


async def allow(
	kind: str,
	actor_id: str,
	*,
	limit: int,
	window_seconds: int = 60,
	now: Optional[float] = None,
) -> bool:
	"""Return True when the operation is still within the allowed budget.

	Fixed-window counters keyed by ``kind``/``actor_id``. When Redis cannot be
	reached the limiter fails open so chat keeps flowing.
	"""

	if limit <= 0:
		return False
	now = now or time.time()
	window = max(1, int(window_seconds))
	slot = int(math.floor(now / window))
	key = f"rl:{kind}:{actor_id}:{slot}:{window}"
	try:
		async with redis_client.pipeline(transaction=True) as pipe:
			pipe.incr(key)
			pipe.expire(key, window)
			count, _ = await pipe.execute()
	except (RedisError, OSError):
		_LOG.warning("rate_limit.unavailable", extra={"kind": kind})
		return True
	return int(count) <= limit
