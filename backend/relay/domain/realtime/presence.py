"""Presence tracking derived from connection registry churn."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Set

from relay.domain.users.repo import UserRepository
from relay.obs import metrics as obs_metrics

from .registry import ConnectionRegistry

_LOG = logging.getLogger(__name__)

EVENT_STATUS_CHANGE = "user_status_change"
EVENT_ONLINE_USERS = "online_users"


@dataclass(slots=True, frozen=True)
class PresenceDelta:
	identity: str
	is_online: bool
	at: datetime


class PresenceTracker:
	"""Maintains the canonical online set and fans out presence changes.

	``on_presence_change`` runs inside the registry's critical section: it
	updates the online set immediately and queues the delta. A single
	dispatcher drains the queue in FIFO order, so changes for one identity are
	persisted and broadcast in the order they happened.
	"""

	def __init__(self, registry: ConnectionRegistry, users: UserRepository | None = None) -> None:
		self._registry = registry
		self._users = users or UserRepository()
		self._online: Set[str] = set()
		self._queue: asyncio.Queue[PresenceDelta] = asyncio.Queue()
		self._running = False
		registry.add_listener(self.on_presence_change)

	def on_presence_change(self, identity: str, is_online: bool) -> None:
		if is_online:
			self._online.add(identity)
		else:
			self._online.discard(identity)
		obs_metrics.set_presence_online(len(self._online))
		self._queue.put_nowait(PresenceDelta(identity=identity, is_online=is_online, at=datetime.now(timezone.utc)))

	def snapshot(self) -> frozenset[str]:
		return frozenset(self._online)

	def is_online(self, identity: str) -> bool:
		return identity in self._online

	async def broadcast_delta(self, identity: str, is_online: bool) -> int:
		"""Push ``user_status_change`` to every active connection except the subject's."""
		payload = {"userId": identity, "online": is_online}
		sent = 0
		for connection in self._registry.connections():
			if connection.identity == identity or not connection.is_active:
				continue
			if connection.send(EVENT_STATUS_CHANGE, payload):
				sent += 1
		obs_metrics.inc_presence_change(is_online)
		return sent

	def online_users_for(self, identity: Optional[str]) -> list[str]:
		return sorted(user_id for user_id in self._online if user_id != identity)

	async def _apply(self, delta: PresenceDelta) -> None:
		try:
			await self._users.set_online(delta.identity, delta.is_online, delta.at)
		except Exception:
			_LOG.warning("presence.persist_failed", exc_info=True, extra={"identity": delta.identity})
		await self.broadcast_delta(delta.identity, delta.is_online)

	async def process_once(self) -> int:
		"""Apply every delta queued so far; returns how many were processed."""
		processed = 0
		while True:
			try:
				delta = self._queue.get_nowait()
			except asyncio.QueueEmpty:
				return processed
			try:
				await self._apply(delta)
			finally:
				self._queue.task_done()
			processed += 1

	async def run_forever(self) -> None:
		self._running = True
		while self._running:
			delta = await self._queue.get()
			try:
				await self._apply(delta)
			except Exception:
				_LOG.exception("presence.dispatch_failed", extra={"identity": delta.identity})
			finally:
				self._queue.task_done()

	async def run_reconciler(self, interval_seconds: float) -> None:
		self._running = True
		while self._running:
			await asyncio.sleep(interval_seconds)
			try:
				await self.reconcile()
			except Exception:
				_LOG.exception("presence.reconcile_failed")

	def stop(self) -> None:
		self._running = False

	async def reconcile(self) -> int:
		"""Resend the full online list to each client and resync persisted flags.

		Consistency backstop for missed deltas; returns the number of persisted
		flags that had drifted.
		"""
		for connection in self._registry.connections():
			if connection.is_active:
				connection.send(EVENT_ONLINE_USERS, self.online_users_for(connection.identity))
		changed = await self._users.sync_online(self.snapshot(), datetime.now(timezone.utc))
		if changed:
			_LOG.info("presence.reconciled", extra={"changed": changed})
		return changed

	async def reset_persisted(self) -> int:
		"""Align persisted flags with the live set (used at startup)."""
		return await self._users.sync_online(self.snapshot(), datetime.now(timezone.utc))
