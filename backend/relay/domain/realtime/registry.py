"""Identity to live-connection registry (one active connection per identity)."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from relay.obs import metrics as obs_metrics

from .connection import Connection

_LOG = logging.getLogger(__name__)

PresenceListener = Callable[[str, bool], None]


class ConnectionRegistry:
	"""Maps each identity to its single live connection.

	Mutations run under one lock and never await I/O while holding it. Reads
	have no suspension points, so they always see a state produced by a whole
	register/deregister call. Presence listeners are notified inside the
	critical section, which keeps the order of notifications equal to the
	order of mutations.
	"""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._by_identity: Dict[str, Connection] = {}
		self._listeners: List[PresenceListener] = []

	def add_listener(self, listener: PresenceListener) -> None:
		self._listeners.append(listener)

	async def register(self, identity: str, connection: Connection) -> Optional[Connection]:
		"""Make ``connection`` the live connection for ``identity``.

		Returns the connection it replaced, if any; the caller closes it.
		Registering the same connection id twice is a no-op.
		"""
		async with self._lock:
			current = self._by_identity.get(identity)
			if current is not None and current.connection_id == connection.connection_id:
				return None
			self._by_identity[identity] = connection
			if current is None:
				self._notify(identity, True)
				return None
		obs_metrics.inc_superseded()
		_LOG.info(
			"registry.superseded",
			extra={"identity": identity, "old_connection": current.connection_id, "new_connection": connection.connection_id},
		)
		return current

	async def deregister(self, identity: str, connection_id: str) -> bool:
		"""Remove ``identity`` only if ``connection_id`` is still its live connection."""
		async with self._lock:
			current = self._by_identity.get(identity)
			if current is None or current.connection_id != connection_id:
				return False
			del self._by_identity[identity]
			self._notify(identity, False)
			return True

	def lookup(self, identity: str) -> Optional[Connection]:
		connection = self._by_identity.get(identity)
		if connection is None or not connection.is_open:
			return None
		return connection

	def touch(self, identity: str, connection_id: str) -> None:
		connection = self._by_identity.get(identity)
		if connection is not None and connection.connection_id == connection_id:
			connection.touch()

	def is_online(self, identity: str) -> bool:
		return identity in self._by_identity

	def identities(self) -> frozenset[str]:
		return frozenset(self._by_identity)

	def connections(self) -> List[Connection]:
		return list(self._by_identity.values())

	def __len__(self) -> int:
		return len(self._by_identity)

	def _notify(self, identity: str, is_online: bool) -> None:
		for listener in self._listeners:
			try:
				listener(identity, is_online)
			except Exception:
				_LOG.exception("registry.listener_failed", extra={"identity": identity})
