"""Persisted presence flags (``online`` / ``last_seen``) per user."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import asyncpg

from relay.domain.exceptions import PersistenceFailure
from relay.infra import postgres
from relay.settings import settings

_LOG = logging.getLogger(__name__)

_STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


@dataclass(slots=True, frozen=True)
class UserPresenceRecord:
	user_id: str
	online: bool
	last_seen: Optional[datetime]


class _InMemoryUsers:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._users: Dict[str, UserPresenceRecord] = {}

	async def set_online(self, user_id: str, online: bool, at: datetime) -> None:
		async with self._lock:
			self._users[user_id] = UserPresenceRecord(user_id=user_id, online=online, last_seen=at)

	async def list_users(self) -> List[UserPresenceRecord]:
		async with self._lock:
			return sorted(self._users.values(), key=lambda record: record.user_id)

	async def sync_online(self, online_ids: Iterable[str], at: datetime) -> int:
		online = set(online_ids)
		changed = 0
		async with self._lock:
			for user_id, record in list(self._users.items()):
				should_be_online = user_id in online
				if record.online != should_be_online:
					self._users[user_id] = UserPresenceRecord(user_id=user_id, online=should_be_online, last_seen=at)
					changed += 1
			for user_id in online - set(self._users):
				self._users[user_id] = UserPresenceRecord(user_id=user_id, online=True, last_seen=at)
				changed += 1
		return changed


class UserRepository:
	"""Reads and writes the persisted presence flags used by ``GET /users``."""

	def __init__(self, memory: _InMemoryUsers | None = None) -> None:
		self._memory = memory or _InMemoryUsers()
	async def _pool_or_none(self):
		if not settings.postgres_enabled:
			return None
		try:
			return await postgres.get_pool()
		except (AssertionError, *_STORE_ERRORS) as exc:
			_LOG.warning("users_repo.postgres_unavailable", exc_info=True)
			raise PersistenceFailure() from exc

	async def set_online(self, user_id: str, online: bool, at: datetime) -> None:
		pool = await self._pool_or_none()
		if pool is None:
			await self._memory.set_online(user_id, online, at)
			return
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				INSERT INTO relay_users (user_id, online, last_seen)
				VALUES ($1, $2, $3)
				ON CONFLICT (user_id) DO UPDATE SET online = EXCLUDED.online, last_seen = EXCLUDED.last_seen
				""",
				user_id,
				online,
				at,
			)

	async def list_users(self) -> List[UserPresenceRecord]:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.list_users()
		async with pool.acquire() as conn:
			rows = await conn.fetch("SELECT user_id, online, last_seen FROM relay_users ORDER BY user_id")
		return [
			UserPresenceRecord(user_id=str(row["user_id"]), online=bool(row["online"]), last_seen=row["last_seen"])
			for row in rows
		]

	async def sync_online(self, online_ids: Iterable[str], at: datetime) -> int:
		"""Make persisted flags match ``online_ids``; returns the number of rows changed."""
		ids = sorted(set(online_ids))
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.sync_online(ids, at)
		async with pool.acquire() as conn:
			async with conn.transaction():
				went_offline = await conn.execute(
					"""
					UPDATE relay_users SET online = FALSE, last_seen = $2
					WHERE online = TRUE AND NOT (user_id = ANY($1::text[]))
					""",
					ids,
					at,
				)
				went_online = await conn.execute(
					"""
					INSERT INTO relay_users (user_id, online, last_seen)
					SELECT unnest($1::text[]), TRUE, $2
					ON CONFLICT (user_id) DO UPDATE SET online = TRUE, last_seen = EXCLUDED.last_seen
					WHERE relay_users.online = FALSE
					""",
					ids,
					at,
				)
		return _affected(went_offline) + _affected(went_online)


def _affected(status: str) -> int:
	try:
		return int(status.rsplit(" ", 1)[-1])
	except (ValueError, IndexError):
		return 0
