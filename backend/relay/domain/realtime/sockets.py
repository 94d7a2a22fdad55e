"""Socket.IO binding for the relay (default namespace)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import socketio
from pydantic import ValidationError

from relay.domain.chat.schemas import JoinPayload, SendMessagePayload, TypingPayload
from relay.domain.exceptions import JoinRejected, RelayError
from relay.infra.rate_limit import allow as rate_allow
from relay.obs import logging as obs_logging
from relay.obs import metrics as obs_metrics
from relay.settings import settings

from . import container
from .connection import Connection
from .lifecycle import REASON_TRANSPORT
from .presence import EVENT_ONLINE_USERS

logger = logging.getLogger(__name__)

EVENT_MESSAGE_ERROR = "message_error"
EVENT_JOIN_ERROR = "join_error"


def _parse_identity(data: Any) -> str:
	if isinstance(data, str):
		return data.strip()
	return JoinPayload.model_validate(data or {}).user_id.strip()


class RelayNamespace(socketio.AsyncNamespace):
	"""Translates socket events into lifecycle, router and typing calls."""

	def __init__(self, namespace: str = "/", services: container.RelayServices | None = None) -> None:
		super().__init__(namespace)
		self._services = services
		self._inbound: Dict[str, asyncio.Lock] = {}

	@property
	def services(self) -> container.RelayServices:
		return self._services or container.get_services()

	async def trigger_event(self, event: str, *args: Any) -> Any:
		"""Handle one socket's events one at a time, in arrival order.

		The server runs each inbound packet on its own task. ``disconnect`` is
		exempt: it can be raised from inside a handler that holds the lock.
		"""
		sid = args[0] if args else None
		if event == "disconnect":
			self._inbound.pop(sid, None)
			return await super().trigger_event(event, *args)
		lock = self._inbound.setdefault(sid, asyncio.Lock())
		async with lock:
			return await super().trigger_event(event, *args)

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		obs_metrics.socket_connected(self.namespace)

		async def emitter(event: str, payload: Any) -> None:
			await self.emit(event, payload, room=sid)

		async def closer() -> None:
			await self.disconnect(sid)

		self.services.lifecycle.open(sid, emitter, closer)
		if not isinstance(auth, dict) or auth.get("userId") is None:
			return
		try:
			identity = _parse_identity(auth)
		except ValidationError:
			await self._reply(sid, EVENT_JOIN_ERROR, {"reason": "invalid_identity"})
			return
		await self._join(sid, identity)

	async def on_disconnect(self, sid: str, reason: Any = None) -> None:
		obs_metrics.socket_disconnected(self.namespace)
		await self.services.lifecycle.close(sid, REASON_TRANSPORT)
		logger.info("relay.disconnect", extra={"sid": sid, "reason": str(reason) if reason else None})

	async def on_join(self, sid: str, data: Any = None) -> None:
		obs_metrics.socket_event(self.namespace, "join")
		try:
			identity = _parse_identity(data)
		except ValidationError:
			await self._reply(sid, EVENT_JOIN_ERROR, {"reason": "invalid_identity"})
			return
		await self._join(sid, identity)

	async def on_send_message(self, sid: str, data: Any = None) -> None:
		obs_metrics.socket_event(self.namespace, "send_message")
		connection = await self._require_active(sid)
		if connection is None:
			return
		identity = connection.identity
		if not await self._check_limits(
			"send_message",
			identity,
			limit=settings.send_rate_limit,
			window=settings.send_rate_window_seconds,
		):
			connection.send(EVENT_MESSAGE_ERROR, {"reason": "rate_limited"})
			return
		try:
			payload = SendMessagePayload.model_validate(data or {})
		except ValidationError:
			obs_metrics.inc_chat_send_failed("validation")
			connection.send(EVENT_MESSAGE_ERROR, {"reason": "invalid_payload"})
			return
		if payload.sender_id and payload.sender_id != identity:
			obs_metrics.inc_chat_send_failed("validation")
			connection.send(EVENT_MESSAGE_ERROR, {"reason": "sender_mismatch"})
			return
		tokens = obs_logging.bind_context(sid=sid, event="send_message", user_id=identity)
		try:
			await self.services.router.send(
				identity,
				payload.receiver_id,
				payload.content,
				payload.kind,
				image_token=payload.image_token,
				image_url=payload.image_url,
			)
		except RelayError as exc:
			if exc.status_code < 500:
				obs_metrics.inc_chat_send_failed("validation")
			connection.send(EVENT_MESSAGE_ERROR, {"reason": exc.detail})
		except Exception:
			obs_metrics.inc_chat_send_failed("internal")
			logger.exception("relay.send_failed")
			connection.send(EVENT_MESSAGE_ERROR, {"reason": "internal_error"})
		finally:
			obs_logging.reset_context(tokens)

	async def on_typing(self, sid: str, data: Any = None) -> None:
		obs_metrics.socket_event(self.namespace, "typing")
		connection = await self._require_active(sid)
		if connection is None:
			return
		try:
			payload = TypingPayload.model_validate(data or {})
		except ValidationError:
			obs_metrics.inc_typing("invalid")
			return
		if payload.sender_id and payload.sender_id != connection.identity:
			obs_metrics.inc_typing("invalid")
			return
		if not await self._check_limits(
			"typing",
			connection.identity,
			limit=settings.typing_rate_limit,
			window=settings.typing_rate_window_seconds,
		):
			return
		self.services.typing.set_typing(connection.identity, payload.receiver_id, payload.is_typing)

	async def on_get_online_users(self, sid: str, data: Any = None) -> None:
		obs_metrics.socket_event(self.namespace, "get_online_users")
		connection = await self._require_active(sid)
		if connection is None:
			return
		connection.send(EVENT_ONLINE_USERS, self.services.presence.online_users_for(connection.identity))

	async def on_logout(self, sid: str, data: Any = None) -> None:
		obs_metrics.socket_event(self.namespace, "logout")
		await self.services.lifecycle.logout(sid)

	async def _join(self, sid: str, identity: str) -> None:
		with obs_logging.log_context(sid=sid, event="join"):
			try:
				connection = await self.services.lifecycle.join(sid, identity)
			except JoinRejected as exc:
				logger.info("relay.join_rejected", extra={"reason": exc.detail})
				await self._reply(sid, EVENT_JOIN_ERROR, {"reason": exc.detail})
				return
			logger.info("relay.join", extra={"user_id": connection.identity})

	async def _require_active(self, sid: str) -> Optional[Connection]:
		lifecycle = self.services.lifecycle
		connection = lifecycle.connection_for(sid)
		if connection is None or not connection.is_active:
			await self._reply(sid, EVENT_MESSAGE_ERROR, {"reason": "not_joined"})
			return None
		lifecycle.touch(sid)
		return connection

	async def _reply(self, sid: str, event: str, payload: dict) -> None:
		connection = self.services.lifecycle.connection_for(sid)
		if connection is not None:
			connection.send(event, payload)
			return
		await self.emit(event, payload, room=sid)

	async def _check_limits(self, kind: str, identity: str, *, limit: int, window: int) -> bool:
		if not settings.rate_limit_enabled:
			return True
		if await rate_allow(kind, identity, limit=limit, window_seconds=window):
			return True
		obs_metrics.inc_rate_limited(kind)
		return False
