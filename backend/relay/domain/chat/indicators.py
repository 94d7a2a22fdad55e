"""Typing indicator relay."""

from __future__ import annotations

from relay.domain.realtime.registry import ConnectionRegistry
from relay.obs import metrics as obs_metrics

from .models import TypingSignal

EVENT_USER_TYPING = "user_typing"


class TypingCoordinator:
	"""Stateless pass-through; the sender's client owns the debounce timeout."""

	def __init__(self, registry: ConnectionRegistry) -> None:
		self._registry = registry

	def set_typing(self, sender_id: str, receiver_id: str, is_typing: bool) -> bool:
		signal = TypingSignal(sender_id=sender_id, receiver_id=receiver_id, is_typing=bool(is_typing))
		if not signal.sender_id or not signal.receiver_id or signal.sender_id == signal.receiver_id:
			obs_metrics.inc_typing("invalid")
			return False
		target = self._registry.lookup(signal.receiver_id)
		if target is None or not target.is_active:
			obs_metrics.inc_typing("dropped")
			return False
		sent = target.send(EVENT_USER_TYPING, {"senderId": signal.sender_id, "isTyping": signal.is_typing})
		obs_metrics.inc_typing("relayed" if sent else "dropped")
		return sent
