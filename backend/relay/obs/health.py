"""Liveness and readiness probes."""

from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Any, Awaitable, Callable, Dict, Tuple

from relay.infra import postgres
from relay.infra.redis import redis_client
from relay.obs import metrics
from relay.settings import settings

LOGGER = logging.getLogger(__name__)


async def _timed(name: str, check: Callable[[], Awaitable[Any]], timeout: float) -> Dict[str, Any]:
	started = perf_counter()
	try:
		await asyncio.wait_for(check(), timeout=timeout)
	except Exception as exc:  # pragma: no cover - depends on runtime
		LOGGER.warning("health.%s_failed", name, exc_info=True)
		return {"ok": False, "error": str(exc) or type(exc).__name__}
	return {"ok": True, "latency_ms": round((perf_counter() - started) * 1000, 2)}


async def _check_redis() -> Dict[str, Any]:
	state = await _timed("redis", redis_client.ping, timeout=0.2)
	metrics.mark_redis(state["ok"])
	return state


async def _select_one() -> None:
	pool = await postgres.get_pool()
	async with pool.acquire() as conn:
		await conn.execute("SELECT 1")


async def _check_postgres() -> Dict[str, Any]:
	if not settings.postgres_enabled:
		return {"ok": True, "mode": "memory"}
	state = await _timed("postgres", _select_one, timeout=0.5)
	metrics.mark_postgres(state["ok"])
	return state


async def liveness() -> Dict[str, Any]:
	return {"status": "ok"}


async def readiness(*, connections: int = 0, online: int = 0) -> Tuple[int, Dict[str, Any]]:
	"""Postgres gates readiness; Redis only backs rate limiting and is reported."""
	redis_state, postgres_state = await asyncio.gather(_check_redis(), _check_postgres())
	ready = bool(postgres_state["ok"])
	healthy = ready and bool(redis_state["ok"])
	return (
		200 if ready else 503,
		{
			"status": "ok" if healthy else "degraded",
			"checks": {"redis": redis_state, "postgres": postgres_state},
			"relay": {"connections": connections, "online": online},
		},
	)
