"""AsyncPG pool management for the backend."""

from __future__ import annotations

from typing import Optional

import asyncpg

from relay.settings import settings

_pool: Optional[asyncpg.pool.Pool] = None

SCHEMA = """
CREATE TABLE IF NOT EXISTS relay_users (
	user_id TEXT PRIMARY KEY,
	online BOOLEAN NOT NULL DEFAULT FALSE,
	last_seen TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS relay_messages (
	message_id TEXT PRIMARY KEY,
	sender_id TEXT NOT NULL,
	receiver_id TEXT NOT NULL,
	content TEXT NOT NULL,
	kind TEXT NOT NULL DEFAULT 'text',
	image_url TEXT,
	delivered BOOLEAN NOT NULL DEFAULT FALSE,
	read BOOLEAN NOT NULL DEFAULT FALSE,
	created_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS relay_messages_pair_idx
	ON relay_messages (sender_id, receiver_id, created_at DESC);
CREATE INDEX IF NOT EXISTS relay_messages_receiver_idx
	ON relay_messages (receiver_id, read);
"""


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		# Force 127.0.0.1 instead of localhost to avoid IPv6 issues on Windows
		dsn = settings.postgres_url.replace("localhost", "127.0.0.1")
		_pool = await asyncpg.create_pool(
			dsn=dsn,
			min_size=settings.postgres_min_pool_size,
			max_size=settings.postgres_max_pool_size,
		)
	return _pool


async def get_pool() -> asyncpg.pool.Pool:
	if _pool is None:
		await init_pool()
	assert _pool is not None
	return _pool


async def ensure_schema(pool: asyncpg.pool.Pool) -> None:
	async with pool.acquire() as conn:
		await conn.execute(SCHEMA)


async def close_pool() -> None:
	global _pool
	if _pool is not None:
		await _pool.close()
		_pool = None
