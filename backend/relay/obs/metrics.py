"""Central registry for Prometheus metrics used across the relay."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNTER = Counter(
	"relay_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"relay_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"relay_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"relay_socketio_events_total",
	"Socket.IO events handled or emitted per namespace",
	["namespace", "event"],
)

PRESENCE_ONLINE = Gauge(
	"relay_presence_online_users",
	"Identities with a live registered connection",
)

PRESENCE_CHANGES = Counter(
	"relay_presence_changes_total",
	"Presence transitions broadcast to connected clients",
	["state"],
)

CONNECTIONS_SUPERSEDED = Counter(
	"relay_connections_superseded_total",
	"Connections replaced by a newer connection for the same identity",
)

OUTBOUND_OVERFLOWS = Counter(
	"relay_outbound_queue_overflow_total",
	"Connections closed because their outbound queue filled up",
)

CHAT_SEND = Counter(
	"relay_chat_messages_sent_total",
	"Direct messages persisted",
	["kind"],
)

CHAT_DELIVERED = Counter(
	"relay_chat_messages_delivered_total",
	"Direct messages forwarded to an online receiver",
)

CHAT_SEND_FAILED = Counter(
	"relay_chat_send_failures_total",
	"Direct message sends rejected or aborted",
	["reason"],
)

CHAT_READ = Counter(
	"relay_chat_read_receipts_total",
	"Read receipt updates applied",
)

TYPING_SIGNALS = Counter(
	"relay_typing_signals_total",
	"Typing signals relayed or dropped",
	["result"],
)

IMAGE_UPLOADS = Counter(
	"relay_image_uploads_total",
	"Inbound image uploads",
	["result"],
)

RATE_LIMITED_EVENTS = Counter(
	"relay_rate_limited_events_total",
	"Socket events rejected by the rate limiter",
	["kind"],
)

POSTGRES_UP = Gauge(
	"relay_postgres_up",
	"Postgres readiness (1 healthy, 0 unavailable)",
)

REDIS_UP = Gauge(
	"relay_redis_up",
	"Redis readiness (1 healthy, 0 unavailable)",
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def set_presence_online(count: int) -> None:
	PRESENCE_ONLINE.set(float(count))


def inc_presence_change(online: bool) -> None:
	PRESENCE_CHANGES.labels(state="online" if online else "offline").inc()


def inc_superseded() -> None:
	CONNECTIONS_SUPERSEDED.inc()


def inc_outbound_overflow() -> None:
	OUTBOUND_OVERFLOWS.inc()


def inc_chat_send(kind: str) -> None:
	CHAT_SEND.labels(kind=kind).inc()


def inc_chat_delivered() -> None:
	CHAT_DELIVERED.inc()


def inc_chat_send_failed(reason: str) -> None:
	CHAT_SEND_FAILED.labels(reason=reason).inc()


def inc_chat_read() -> None:
	CHAT_READ.inc()


def inc_typing(result: str) -> None:
	TYPING_SIGNALS.labels(result=result).inc()


def inc_image_upload(result: str) -> None:
	IMAGE_UPLOADS.labels(result=result).inc()


def inc_rate_limited(kind: str) -> None:
	RATE_LIMITED_EVENTS.labels(kind=kind).inc()


def mark_postgres(ok: bool) -> None:
	POSTGRES_UP.set(1.0 if ok else 0.0)


def mark_redis(ok: bool) -> None:
	REDIS_UP.set(1.0 if ok else 0.0)
