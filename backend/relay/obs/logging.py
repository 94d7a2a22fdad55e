"""JSON logging for the relay.

HTTP requests and socket events share one set of context variables, so a
log line emitted deep inside the message router still carries the request
id or socket id and the identity it was handling.
"""

from __future__ import annotations

import json
import logging
import random
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from relay.settings import settings

_LOGGER_NAME = "relay"

# output key -> context variable
_CONTEXT: Dict[str, ContextVar[Optional[str]]] = {
	"request_id": ContextVar("relay_request_id", default=None),
	"route": ContextVar("relay_route", default=None),
	"ip": ContextVar("relay_client_ip", default=None),
	"sid": ContextVar("relay_sid", default=None),
	"event": ContextVar("relay_event", default=None),
	"user_id": ContextVar("relay_user_id", default=None),
}

# Message bodies and image links never reach the log stream.
_REDACTED_KEYS = ("token", "secret", "authorization", "password", "content", "image_url", "body")

_MAX_STRING = 256
_MAX_ITEMS = 10

_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def bind_context(**fields: Optional[str]) -> Dict[str, Token]:
	"""Set context fields (``request_id``, ``route``, ``ip``, ``sid``, ``event``, ``user_id``).

	``None`` values are skipped. Pass the returned tokens to ``reset_context``.
	"""
	tokens: Dict[str, Token] = {}
	for key, value in fields.items():
		if value is None:
			continue
		if key not in _CONTEXT:
			raise KeyError(f"unknown log context field: {key}")
		tokens[key] = _CONTEXT[key].set(value)
	return tokens


def reset_context(tokens: Dict[str, Token]) -> None:
	for key, token in tokens.items():
		_CONTEXT[key].reset(token)


@contextmanager
def log_context(**fields: Optional[str]) -> Iterator[None]:
	tokens = bind_context(**fields)
	try:
		yield
	finally:
		reset_context(tokens)


def current_request_id() -> Optional[str]:
	return _CONTEXT["request_id"].get()


def _clip(value: Any) -> Any:
	if isinstance(value, str):
		return value if len(value) <= _MAX_STRING else value[:_MAX_STRING] + "…"
	if isinstance(value, dict):
		clipped = {key: _scrub(str(key), nested) for key, nested in list(value.items())[:_MAX_ITEMS]}
		if len(value) > _MAX_ITEMS:
			clipped["…"] = f"+{len(value) - _MAX_ITEMS} keys"
		return clipped
	if isinstance(value, (list, tuple, set, frozenset)):
		items = [_clip(item) for item in list(value)[:_MAX_ITEMS]]
		if len(value) > _MAX_ITEMS:
			items.append("…")
		return items
	return value


def _scrub(key: str, value: Any) -> Any:
	lowered = key.lower()
	if any(marker in lowered for marker in _REDACTED_KEYS):
		return "[redacted]"
	return _clip(value)


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per line: base fields, bound context, then ``extra``."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"logger": record.name,
			"msg": record.getMessage(),
			"service": settings.service_name,
			"env": settings.environment,
		}
		if settings.git_commit:
			payload["commit"] = settings.git_commit
		for key, var in _CONTEXT.items():
			value = var.get()
			if value:
				payload[key] = value
		for key, value in record.__dict__.items():
			if key not in _RECORD_ATTRS:
				payload[key] = _scrub(key, value)
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Drop a share of INFO records; other levels always pass."""

	def __init__(self, rate: Optional[float] = None) -> None:
		super().__init__()
		configured = settings.obs_log_sampling_rate_info if rate is None else rate
		self.rate = max(0.0, min(1.0, configured))

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO or self.rate >= 1.0:
			return True
		return random.random() < self.rate


def configure_logging() -> logging.Logger:
	root = logging.getLogger()
	for handler in list(root.handlers):
		root.removeHandler(handler)
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root.addHandler(handler)
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_LOGGER_NAME)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _LOGGER_NAME)
