import asyncio
from unittest.mock import AsyncMock

import pytest
import socketio

from relay.domain.realtime import sockets as sockets_module
from relay.domain.realtime.sockets import RelayNamespace
from relay.settings import settings


def _namespace(services) -> RelayNamespace:
	server = socketio.AsyncServer(async_mode="asgi")
	namespace = RelayNamespace("/", services=services)
	server.register_namespace(namespace)
	namespace.emit = AsyncMock()
	namespace.disconnect = AsyncMock()
	return namespace


def _events(namespace: RelayNamespace, sid: str, name: str | None = None):
	events = [
		(call.args[0], call.args[1])
		for call in namespace.emit.await_args_list
		if call.kwargs.get("room") == sid
	]
	if name is None:
		return events
	return [payload for event, payload in events if event == name]


async def _flush(services) -> None:
	await services.presence.process_once()
	for sid in ("sid-alice", "sid-bob", "sid-1", "sid-2"):
		conn = services.lifecycle.connection_for(sid)
		if conn is not None:
			await conn.drain()


async def _connect_and_join(namespace, sid: str, identity: str) -> None:
	await namespace.trigger_event("connect", sid, {"asgi.scope": {"headers": []}})
	await namespace.trigger_event("join", sid, identity)


@pytest.mark.asyncio
async def test_events_before_join_are_rejected(services):
	namespace = _namespace(services)
	await namespace.trigger_event("connect", "sid-alice", {"asgi.scope": {"headers": []}})

	await namespace.trigger_event("send_message", "sid-alice", {"receiverId": "bob", "content": "hi"})
	await _flush(services)

	assert _events(namespace, "sid-alice", "message_error") == [{"reason": "not_joined"}]


@pytest.mark.asyncio
async def test_join_broadcasts_presence_and_snapshot(services):
	namespace = _namespace(services)
	await _connect_and_join(namespace, "sid-bob", "bob")
	await _connect_and_join(namespace, "sid-alice", {"userId": "alice"})
	await _flush(services)

	assert _events(namespace, "sid-alice", "online_users") == [["bob"]]
	assert {"userId": "alice", "online": True} in _events(namespace, "sid-bob", "user_status_change")
	assert services.presence.snapshot() == frozenset({"alice", "bob"})


@pytest.mark.asyncio
async def test_send_message_reaches_receiver_and_echoes_sender(services):
	namespace = _namespace(services)
	await _connect_and_join(namespace, "sid-alice", "alice")
	await _connect_and_join(namespace, "sid-bob", "bob")

	await namespace.trigger_event(
		"send_message",
		"sid-alice",
		{"senderId": "alice", "receiverId": "bob", "content": "hi", "type": "text"},
	)
	await _flush(services)

	received = _events(namespace, "sid-bob", "new_message")
	echoed = _events(namespace, "sid-alice", "message_sent")
	assert len(received) == 1 and received[0]["content"] == "hi"
	assert echoed[0]["id"] == received[0]["id"]
	history = await services.chat_repo.list_conversation("alice", "bob", offset=0, limit=10)
	assert history[0].delivered is True


@pytest.mark.asyncio
async def test_sender_must_match_joined_identity(services):
	namespace = _namespace(services)
	await _connect_and_join(namespace, "sid-alice", "alice")

	await namespace.trigger_event("send_message", "sid-alice", {"senderId": "bob", "receiverId": "carol", "content": "hi"})
	await _flush(services)

	assert _events(namespace, "sid-alice", "message_error") == [{"reason": "sender_mismatch"}]
	assert await services.chat_repo.unread_count("carol") == 0


@pytest.mark.asyncio
async def test_validation_error_is_reported_to_sender(services):
	namespace = _namespace(services)
	await _connect_and_join(namespace, "sid-alice", "alice")

	await namespace.trigger_event("send_message", "sid-alice", {"receiverId": "alice", "content": "me"})
	await namespace.trigger_event("send_message", "sid-alice", {"content": "no receiver"})
	await _flush(services)

	assert _events(namespace, "sid-alice", "message_error") == [
		{"reason": "cannot_message_self"},
		{"reason": "invalid_payload"},
	]


@pytest.mark.asyncio
async def test_duplicate_join_supersedes_previous_socket(services):
	namespace = _namespace(services)
	await _connect_and_join(namespace, "sid-1", "alice")
	await _connect_and_join(namespace, "sid-2", "alice")
	await _flush(services)

	assert _events(namespace, "sid-1", "session_closed") == [{"reason": "superseded"}]
	namespace.disconnect.assert_awaited_with("sid-1")
	assert services.registry.lookup("alice").sid == "sid-2"

	# the transport close for the old socket must not evict the new one
	await namespace.trigger_event("disconnect", "sid-1")
	assert services.registry.lookup("alice").sid == "sid-2"


@pytest.mark.asyncio
async def test_join_with_other_identity_is_refused(services):
	namespace = _namespace(services)
	await _connect_and_join(namespace, "sid-alice", "alice")

	await namespace.trigger_event("join", "sid-alice", "mallory")
	await _flush(services)

	assert _events(namespace, "sid-alice", "join_error") == [{"reason": "identity_mismatch"}]
	assert not services.registry.is_online("mallory")


@pytest.mark.asyncio
async def test_typing_is_relayed_in_order(services):
	namespace = _namespace(services)
	await _connect_and_join(namespace, "sid-alice", "alice")
	await _connect_and_join(namespace, "sid-bob", "bob")

	await namespace.trigger_event("typing", "sid-alice", {"senderId": "alice", "receiverId": "bob", "isTyping": True})
	await namespace.trigger_event("typing", "sid-alice", {"senderId": "alice", "receiverId": "bob", "isTyping": False})
	await _flush(services)

	assert _events(namespace, "sid-bob", "user_typing") == [
		{"senderId": "alice", "isTyping": True},
		{"senderId": "alice", "isTyping": False},
	]


@pytest.mark.asyncio
async def test_disconnect_broadcasts_offline(services):
	namespace = _namespace(services)
	await _connect_and_join(namespace, "sid-alice", "alice")
	await _connect_and_join(namespace, "sid-bob", "bob")
	await _flush(services)

	await namespace.trigger_event("disconnect", "sid-alice")
	await _flush(services)

	assert _events(namespace, "sid-bob", "user_status_change")[-1] == {"userId": "alice", "online": False}
	assert not services.presence.is_online("alice")


@pytest.mark.asyncio
async def test_get_online_users_and_logout(services):
	namespace = _namespace(services)
	await _connect_and_join(namespace, "sid-alice", "alice")
	await _connect_and_join(namespace, "sid-bob", "bob")

	await namespace.trigger_event("get_online_users", "sid-alice")
	await _flush(services)
	assert _events(namespace, "sid-alice", "online_users")[-1] == ["bob"]

	await namespace.trigger_event("logout", "sid-alice")

	assert _events(namespace, "sid-alice", "session_closed") == [{"reason": "logout"}]
	assert not services.registry.is_online("alice")


@pytest.mark.asyncio
async def test_send_rate_limit_emits_error(services, monkeypatch):
	monkeypatch.setattr(settings, "send_rate_limit", 2)
	namespace = _namespace(services)
	await _connect_and_join(namespace, "sid-alice", "alice")

	for index in range(3):
		await namespace.trigger_event("send_message", "sid-alice", {"receiverId": "bob", "content": f"m{index}"})
	await _flush(services)

	assert len(_events(namespace, "sid-alice", "message_sent")) == 2
	assert _events(namespace, "sid-alice", "message_error") == [{"reason": "rate_limited"}]


@pytest.mark.asyncio
async def test_concurrent_sends_from_one_socket_keep_order(services, monkeypatch):
	namespace = _namespace(services)
	await _connect_and_join(namespace, "sid-alice", "alice")
	await _connect_and_join(namespace, "sid-bob", "bob")
	create_message = services.chat_repo.create_message

	async def _slow_first(sender_id, receiver_id, content, *args, **kwargs):
		if content == "first":
			await asyncio.sleep(0.05)
		return await create_message(sender_id, receiver_id, content, *args, **kwargs)

	monkeypatch.setattr(services.chat_repo, "create_message", _slow_first)

	# the server runs each inbound packet on its own task
	await asyncio.gather(
		asyncio.create_task(namespace.trigger_event("send_message", "sid-alice", {"receiverId": "bob", "content": "first"})),
		asyncio.create_task(namespace.trigger_event("send_message", "sid-alice", {"receiverId": "bob", "content": "second"})),
	)
	await _flush(services)

	assert [m["content"] for m in _events(namespace, "sid-bob", "new_message")] == ["first", "second"]


@pytest.mark.asyncio
async def test_concurrent_typing_from_one_socket_keeps_order(services, monkeypatch):
	monkeypatch.setattr(settings, "rate_limit_enabled", True)
	namespace = _namespace(services)
	await _connect_and_join(namespace, "sid-alice", "alice")
	await _connect_and_join(namespace, "sid-bob", "bob")
	calls = []

	async def _slow_first_check(*args, **kwargs):
		calls.append(True)
		if len(calls) == 1:
			await asyncio.sleep(0.05)
		return True

	monkeypatch.setattr(sockets_module, "rate_allow", _slow_first_check)

	await asyncio.gather(
		asyncio.create_task(
			namespace.trigger_event("typing", "sid-alice", {"receiverId": "bob", "isTyping": True})
		),
		asyncio.create_task(
			namespace.trigger_event("typing", "sid-alice", {"receiverId": "bob", "isTyping": False})
		),
	)
	await _flush(services)

	assert [p["isTyping"] for p in _events(namespace, "sid-bob", "user_typing")] == [True, False]


@pytest.mark.asyncio
async def test_handshake_with_non_string_identity_is_refused(services):
	namespace = _namespace(services)

	await namespace.trigger_event("connect", "sid-1", {"asgi.scope": {"headers": []}}, {"userId": 123})
	await _flush(services)

	assert _events(namespace, "sid-1", "join_error") == [{"reason": "invalid_identity"}]
	assert len(services.registry) == 0


@pytest.mark.asyncio
async def test_handshake_identity_joins_immediately(services):
	namespace = _namespace(services)

	await namespace.trigger_event("connect", "sid-1", {"asgi.scope": {"headers": []}}, {"userId": "alice"})
	await _flush(services)

	assert services.registry.lookup("alice") is not None
	assert _events(namespace, "sid-1", "online_users") == [[]]
