"""Message persistence backed by asyncpg with an in-memory fallback."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

import asyncpg
import ulid

from relay.domain.exceptions import PersistenceFailure
from relay.infra import postgres
from relay.settings import settings

from .models import ChatMessage, ConversationSummary, MessageKind

_LOG = logging.getLogger(__name__)

_MESSAGE_COLUMNS = "message_id, sender_id, receiver_id, content, kind, image_url, delivered, read, created_at"

_STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


class _InMemoryStore:
	"""Store used in tests and local runs when Postgres is disabled."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._messages: Dict[str, ChatMessage] = {}

	async def create_message(self, message: ChatMessage) -> ChatMessage:
		async with self._lock:
			self._messages[message.message_id] = message
			return message

	async def get_message(self, message_id: str) -> Optional[ChatMessage]:
		async with self._lock:
			return self._messages.get(message_id)

	async def mark_delivered(self, message_id: str) -> bool:
		async with self._lock:
			message = self._messages.get(message_id)
			if message is None:
				return False
			self._messages[message_id] = replace(message, delivered=True)
			return True

	async def list_conversation(self, user_a: str, user_b: str, *, offset: int, limit: int) -> List[ChatMessage]:
		async with self._lock:
			pair = {user_a, user_b}
			rows = [m for m in self._messages.values() if {m.sender_id, m.receiver_id} == pair]
			rows.sort(key=lambda m: (m.created_at, m.message_id))
			return rows[offset : offset + limit]

	async def mark_read(self, sender_id: str, receiver_id: str) -> int:
		async with self._lock:
			updated = 0
			for message_id, message in list(self._messages.items()):
				if message.sender_id == sender_id and message.receiver_id == receiver_id and not message.read:
					self._messages[message_id] = replace(message, read=True)
					updated += 1
			return updated

	async def unread_count(self, user_id: str) -> int:
		async with self._lock:
			return sum(1 for m in self._messages.values() if m.receiver_id == user_id and not m.read)

	async def list_conversations(self, user_id: str) -> List[ConversationSummary]:
		async with self._lock:
			latest: Dict[str, ChatMessage] = {}
			unread: Dict[str, int] = {}
			for message in self._messages.values():
				if not message.is_participant(user_id):
					continue
				peer = message.peer_of(user_id)
				current = latest.get(peer)
				if current is None or (message.created_at, message.message_id) > (current.created_at, current.message_id):
					latest[peer] = message
				if message.receiver_id == user_id and not message.read:
					unread[peer] = unread.get(peer, 0) + 1
			summaries = [
				ConversationSummary(peer_id=peer, last_message=message, unread_count=unread.get(peer, 0))
				for peer, message in latest.items()
			]
			summaries.sort(key=lambda s: s.last_message.created_at, reverse=True)
			return summaries


class ChatRepository:
	"""Repository backed by asyncpg with an in-memory fallback."""

	def __init__(self, memory: _InMemoryStore | None = None) -> None:
		self._memory = memory or _InMemoryStore()
	async def _pool_or_none(self):
		"""The Postgres pool, or None when the relay runs on the in-memory store.

		With Postgres enabled an unreachable pool raises ``PersistenceFailure``;
		the next call tries again.
		"""
		if not settings.postgres_enabled:
			return None
		try:
			return await postgres.get_pool()
		except (AssertionError, *_STORE_ERRORS) as exc:
			_LOG.warning("chat_repo.postgres_unavailable", exc_info=True)
			raise PersistenceFailure() from exc

	async def create_message(
		self,
		sender_id: str,
		receiver_id: str,
		content: str,
		kind: MessageKind,
		created_at: datetime,
		*,
		image_url: str | None = None,
	) -> ChatMessage:
		message = ChatMessage(
			message_id=str(ulid.new()),
			sender_id=sender_id,
			receiver_id=receiver_id,
			content=content,
			kind=kind,
			image_url=image_url,
			created_at=created_at,
		)
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.create_message(message)
		try:
			async with pool.acquire() as conn:
				await conn.execute(
					"""
					INSERT INTO relay_messages (
						message_id,
						sender_id,
						receiver_id,
						content,
						kind,
						image_url,
						delivered,
						read,
						created_at
					) VALUES ($1,$2,$3,$4,$5,$6,FALSE,FALSE,$7)
					""",
					message.message_id,
					sender_id,
					receiver_id,
					content,
					kind.value,
					image_url,
					created_at,
				)
		except _STORE_ERRORS as exc:
			raise PersistenceFailure() from exc
		return message

	async def get_message(self, message_id: str) -> Optional[ChatMessage]:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.get_message(message_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				f"SELECT {_MESSAGE_COLUMNS} FROM relay_messages WHERE message_id = $1",
				message_id,
			)
			return self._row_to_message(row) if row else None

	async def mark_delivered(self, message_id: str) -> bool:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.mark_delivered(message_id)
		async with pool.acquire() as conn:
			result = await conn.execute(
				"UPDATE relay_messages SET delivered = TRUE WHERE message_id = $1",
				message_id,
			)
			return result.endswith(" 1")

	async def list_conversation(self, user_a: str, user_b: str, *, offset: int, limit: int) -> List[ChatMessage]:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.list_conversation(user_a, user_b, offset=offset, limit=limit)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {_MESSAGE_COLUMNS}
				FROM relay_messages
				WHERE (sender_id = $1 AND receiver_id = $2) OR (sender_id = $2 AND receiver_id = $1)
				ORDER BY created_at ASC, message_id ASC
				OFFSET $3 LIMIT $4
				""",
				user_a,
				user_b,
				offset,
				limit,
			)
			return [self._row_to_message(row) for row in rows]

	async def mark_read(self, sender_id: str, receiver_id: str) -> int:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.mark_read(sender_id, receiver_id)
		async with pool.acquire() as conn:
			result = await conn.execute(
				"""
				UPDATE relay_messages SET read = TRUE
				WHERE sender_id = $1 AND receiver_id = $2 AND read = FALSE
				""",
				sender_id,
				receiver_id,
			)
			return int(result.rsplit(" ", 1)[-1] or 0)

	async def unread_count(self, user_id: str) -> int:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.unread_count(user_id)
		async with pool.acquire() as conn:
			count = await conn.fetchval(
				"SELECT COUNT(*) FROM relay_messages WHERE receiver_id = $1 AND read = FALSE",
				user_id,
			)
			return int(count or 0)

	async def list_conversations(self, user_id: str) -> List[ConversationSummary]:
		pool = await self._pool_or_none()
		if pool is None:
			return await self._memory.list_conversations(user_id)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT DISTINCT ON (peer_id) peer_id, {_MESSAGE_COLUMNS}
				FROM (
					SELECT CASE WHEN sender_id = $1 THEN receiver_id ELSE sender_id END AS peer_id, *
					FROM relay_messages
					WHERE sender_id = $1 OR receiver_id = $1
				) AS m
				ORDER BY peer_id, created_at DESC, message_id DESC
				""",
				user_id,
			)
			unread_rows = await conn.fetch(
				"""
				SELECT sender_id, COUNT(*) AS unread
				FROM relay_messages
				WHERE receiver_id = $1 AND read = FALSE
				GROUP BY sender_id
				""",
				user_id,
			)
		unread = {str(row["sender_id"]): int(row["unread"]) for row in unread_rows}
		summaries = [
			ConversationSummary(
				peer_id=str(row["peer_id"]),
				last_message=self._row_to_message(row),
				unread_count=unread.get(str(row["peer_id"]), 0),
			)
			for row in rows
		]
		summaries.sort(key=lambda s: s.last_message.created_at, reverse=True)
		return summaries

	def _row_to_message(self, row) -> ChatMessage:
		return ChatMessage(
			message_id=str(row["message_id"]),
			sender_id=str(row["sender_id"]),
			receiver_id=str(row["receiver_id"]),
			content=row["content"],
			kind=MessageKind(row["kind"]),
			image_url=row["image_url"],
			created_at=row["created_at"],
			delivered=bool(row["delivered"]),
			read=bool(row["read"]),
		)
