"""Connection handle with a bounded, ordered outbound queue."""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import ulid

from relay.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

Emitter = Callable[[str, dict], Awaitable[None]]
Closer = Callable[[], Awaitable[None]]
OverflowHandler = Callable[["Connection"], None]


@dataclass(slots=True)
class _Outbound:
	event: str
	payload: dict
	future: Optional["asyncio.Future[bool]"] = None
	started: bool = False

	def withdrawn(self) -> bool:
		return self.future is not None and self.future.cancelled()


class ConnectionState(str, enum.Enum):
	CONNECTING = "connecting"
	AUTHENTICATED = "authenticated"
	ACTIVE = "active"
	CLOSED = "closed"


class Connection:
	"""One live duplex session bound to at most one identity.

	Outbound events are written in FIFO order by a single writer task. The
	queue is bounded; when it fills up the overflow handler is invoked and the
	connection is expected to be closed.
	"""

	def __init__(
		self,
		sid: str,
		*,
		emitter: Emitter,
		closer: Closer | None = None,
		queue_size: int = 256,
		on_overflow: OverflowHandler | None = None,
	) -> None:
		self.connection_id = str(ulid.new())
		self.sid = sid
		self.identity: Optional[str] = None
		self.state = ConnectionState.CONNECTING
		self.created_at = time.time()
		self.last_activity = self.created_at
		self.close_reason: Optional[str] = None
		self._emitter = emitter
		self._closer = closer
		self._on_overflow = on_overflow
		self._queue: asyncio.Queue[_Outbound] = asyncio.Queue(maxsize=max(1, queue_size))
		self._writer: asyncio.Task | None = None
		self._overflowed = False

	def __repr__(self) -> str:
		return f"Connection(id={self.connection_id!r}, sid={self.sid!r}, identity={self.identity!r}, state={self.state.value})"

	@property
	def is_open(self) -> bool:
		return self.state is not ConnectionState.CLOSED

	@property
	def is_active(self) -> bool:
		return self.state is ConnectionState.ACTIVE

	def bind(self, identity: str) -> None:
		if self.state is not ConnectionState.CONNECTING:
			raise ValueError(f"cannot bind identity in state {self.state.value}")
		self.identity = identity
		self.state = ConnectionState.AUTHENTICATED
		self.touch()

	def activate(self) -> None:
		if self.state is ConnectionState.AUTHENTICATED:
			self.state = ConnectionState.ACTIVE

	def touch(self) -> None:
		self.last_activity = time.time()

	def send(self, event: str, payload: dict) -> bool:
		"""Queue ``event`` without waiting for the write; False if it was not accepted."""
		return self._enqueue(_Outbound(event, payload))

	async def deliver(self, event: str, payload: dict, *, timeout: Optional[float] = None) -> bool:
		"""Queue ``event`` and wait until it has been written to the transport.

		When ``timeout`` expires before the writer picked the event up, the
		event is withdrawn and never written. A write already under way is
		waited for, so a True result always means the client got the event.
		"""
		item = _Outbound(event, payload, asyncio.get_running_loop().create_future())
		if not self._enqueue(item):
			return False
		try:
			return await asyncio.wait_for(asyncio.shield(item.future), timeout)
		except asyncio.TimeoutError:
			if not item.started:
				item.future.cancel()
				return False
			return await item.future
		except asyncio.CancelledError:
			if not item.started:
				item.future.cancel()
			raise

	async def drain(self) -> None:
		"""Wait until every queued event has been written or dropped."""
		if self._writer is None:
			return
		await self._queue.join()

	def _enqueue(self, item: _Outbound) -> bool:
		if not self.is_open or self._overflowed:
			return False
		try:
			self._queue.put_nowait(item)
		except asyncio.QueueFull:
			self._overflowed = True
			obs_metrics.inc_outbound_overflow()
			_LOG.warning(
				"connection.outbound_overflow",
				extra={"connection_id": self.connection_id, "identity": self.identity},
			)
			if self._on_overflow is not None:
				self._on_overflow(self)
			return False
		self._ensure_writer()
		return True

	def _ensure_writer(self) -> None:
		if self._writer is None or self._writer.done():
			self._writer = asyncio.create_task(self._run_writer(), name=f"relay-writer-{self.connection_id}")

	async def _run_writer(self) -> None:
		while True:
			item = await self._queue.get()
			if item.withdrawn():
				self._queue.task_done()
				continue
			item.started = True
			try:
				await self._emitter(item.event, item.payload)
			except asyncio.CancelledError:
				_resolve(item.future, False)
				raise
			except Exception:
				_LOG.warning(
					"connection.write_failed",
					exc_info=True,
					extra={"connection_id": self.connection_id, "event": item.event},
				)
				_resolve(item.future, False)
			else:
				_resolve(item.future, True)
			finally:
				self._queue.task_done()

	def _discard_pending(self) -> None:
		while True:
			try:
				item = self._queue.get_nowait()
			except asyncio.QueueEmpty:
				return
			_resolve(item.future, False)
			self._queue.task_done()

	def mark_closed(self, reason: str) -> bool:
		"""Move to CLOSED, stop the writer and drop queued events.

		Returns False when the connection was already closed.
		"""
		if not self.is_open:
			return False
		self.state = ConnectionState.CLOSED
		self.close_reason = reason
		writer = self._writer
		self._writer = None
		if writer is not None and writer is not asyncio.current_task():
			writer.cancel()
		self._discard_pending()
		return True

	async def notify_closed(self, reason: str) -> None:
		"""Tell the client why with ``session_closed``, then drop the transport."""
		try:
			await self._emitter("session_closed", {"reason": reason})
		except Exception:
			_LOG.debug("connection.close_notify_failed", exc_info=True)
		if self._closer is not None:
			try:
				await self._closer()
			except Exception:
				_LOG.debug("connection.disconnect_failed", exc_info=True)

	async def close(self, reason: str, *, notify: bool = False) -> bool:
		closed = self.mark_closed(reason)
		if closed and notify:
			await self.notify_closed(reason)
		return closed


def _resolve(future: Optional["asyncio.Future[bool]"], value: bool) -> None:
	if future is not None and not future.done():
		future.set_result(value)
