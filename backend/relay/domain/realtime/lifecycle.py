"""Per-connection state machine from handshake to teardown."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, Set

from relay.domain.exceptions import JoinRejected

from .connection import Closer, Connection, Emitter
from .presence import EVENT_ONLINE_USERS, PresenceTracker
from .registry import ConnectionRegistry

_LOG = logging.getLogger(__name__)

REASON_SUPERSEDED = "superseded"
REASON_LOGOUT = "logout"
REASON_OVERFLOW = "overflow"
REASON_TRANSPORT = "transport_closed"
REASON_SHUTDOWN = "shutdown"


class LifecycleController:
	"""Walks each connection through CONNECTING -> AUTHENTICATED -> ACTIVE -> CLOSED."""

	def __init__(
		self,
		registry: ConnectionRegistry,
		presence: PresenceTracker,
		*,
		queue_size: int = 256,
	) -> None:
		self._registry = registry
		self._presence = presence
		self._queue_size = queue_size
		self._by_sid: Dict[str, Connection] = {}
		self._background: Set[asyncio.Task] = set()

	def open(self, sid: str, emitter: Emitter, closer: Closer | None = None) -> Connection:
		connection = Connection(
			sid,
			emitter=emitter,
			closer=closer,
			queue_size=self._queue_size,
			on_overflow=self._on_overflow,
		)
		self._by_sid[sid] = connection
		_LOG.debug("lifecycle.opened", extra={"sid": sid, "connection_id": connection.connection_id})
		return connection

	def connection_for(self, sid: str) -> Optional[Connection]:
		connection = self._by_sid.get(sid)
		if connection is None or not connection.is_open:
			return None
		return connection

	def touch(self, sid: str) -> None:
		connection = self.connection_for(sid)
		if connection is not None and connection.identity:
			self._registry.touch(connection.identity, connection.connection_id)

	async def join(self, sid: str, identity: str) -> Connection:
		"""Bind ``identity`` to the connection behind ``sid`` and make it live.

		Joining again with the same identity only resends the online list. A
		previous connection for the identity is closed with ``superseded``.
		"""
		identity = identity.strip() if isinstance(identity, str) else ""
		if not identity:
			raise JoinRejected("invalid_identity")
		connection = self.connection_for(sid)
		if connection is None:
			raise JoinRejected("not_connected")
		if connection.identity is not None:
			if connection.identity != identity:
				raise JoinRejected("identity_mismatch")
			connection.send(EVENT_ONLINE_USERS, self._presence.online_users_for(identity))
			return connection

		connection.bind(identity)
		superseded = await self._registry.register(identity, connection)
		if not connection.is_open:
			# closed while waiting for the registry; undo the registration
			await self._registry.deregister(identity, connection.connection_id)
			raise JoinRejected("not_connected")
		if superseded is not None:
			await superseded.close(REASON_SUPERSEDED, notify=True)
		connection.activate()
		connection.send(EVENT_ONLINE_USERS, self._presence.online_users_for(identity))
		_LOG.info("lifecycle.joined", extra={"identity": identity, "connection_id": connection.connection_id})
		return connection

	async def close(self, sid: str, reason: str = REASON_TRANSPORT, *, notify: bool = False) -> bool:
		connection = self._by_sid.pop(sid, None)
		if connection is None:
			return False
		return await self._close_connection(connection, reason, notify=notify)

	async def logout(self, sid: str) -> bool:
		return await self.close(sid, REASON_LOGOUT, notify=True)

	async def shutdown(self) -> None:
		for sid in list(self._by_sid):
			await self.close(sid, REASON_SHUTDOWN)
		for task in list(self._background):
			task.cancel()

	async def _close_connection(self, connection: Connection, reason: str, *, notify: bool) -> bool:
		closed = connection.mark_closed(reason)
		removed = False
		if connection.identity:
			# presence must drop the identity before the client hears about the close
			removed = await self._registry.deregister(connection.identity, connection.connection_id)
		if closed and notify:
			await connection.notify_closed(reason)
		if closed:
			_LOG.info(
				"lifecycle.closed",
				extra={
					"identity": connection.identity,
					"connection_id": connection.connection_id,
					"reason": reason,
					"deregistered": removed,
				},
			)
		return closed

	def _on_overflow(self, connection: Connection) -> None:
		if self._by_sid.get(connection.sid) is connection:
			self._by_sid.pop(connection.sid, None)
		task = asyncio.get_running_loop().create_task(
			self._close_connection(connection, REASON_OVERFLOW, notify=True)
		)
		self._background.add(task)
		task.add_done_callback(self._background.discard)

	def __len__(self) -> int:
		return len(self._by_sid)
