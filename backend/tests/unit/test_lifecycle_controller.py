import asyncio

import pytest

from relay.domain.exceptions import JoinRejected
from relay.domain.realtime.connection import ConnectionState
from relay.domain.realtime.lifecycle import LifecycleController
from relay.domain.realtime.presence import PresenceTracker
from relay.domain.realtime.registry import ConnectionRegistry
from relay.domain.users.repo import UserRepository


class _Client:
	"""Stands in for one socket: records emitted events and disconnects."""

	def __init__(self, gate: asyncio.Event | None = None) -> None:
		self.events = []
		self.disconnected = False
		self.gate = gate

	async def emit(self, event, payload):
		if self.gate is not None and event != "session_closed":
			await self.gate.wait()
		self.events.append((event, payload))

	async def disconnect(self):
		self.disconnected = True

	def named(self, name):
		return [payload for event, payload in self.events if event == name]


def _controller(queue_size: int = 16):
	registry = ConnectionRegistry()
	presence = PresenceTracker(registry, UserRepository())
	return LifecycleController(registry, presence, queue_size=queue_size), registry, presence


def _open(lifecycle: LifecycleController, sid: str, client: _Client):
	return lifecycle.open(sid, client.emit, client.disconnect)


@pytest.mark.asyncio
async def test_join_activates_and_sends_online_users_without_self():
	lifecycle, registry, _ = _controller()
	bob, alice = _Client(), _Client()
	_open(lifecycle, "sid-bob", bob)
	_open(lifecycle, "sid-alice", alice)
	await lifecycle.join("sid-bob", "bob")

	conn = await lifecycle.join("sid-alice", "alice")
	await conn.drain()

	assert conn.state is ConnectionState.ACTIVE
	assert registry.lookup("alice") is conn
	assert alice.named("online_users") == [["bob"]]


@pytest.mark.asyncio
async def test_duplicate_join_supersedes_old_connection():
	lifecycle, registry, presence = _controller()
	first, second = _Client(), _Client()
	old = _open(lifecycle, "sid-1", first)
	_open(lifecycle, "sid-2", second)

	await lifecycle.join("sid-1", "alice")
	new = await lifecycle.join("sid-2", "alice")

	assert registry.lookup("alice") is new
	assert len(registry) == 1
	assert old.state is ConnectionState.CLOSED
	assert first.named("session_closed") == [{"reason": "superseded"}]
	assert first.disconnected
	assert presence.snapshot() == frozenset({"alice"})


@pytest.mark.asyncio
async def test_transport_close_of_superseded_socket_keeps_new_connection():
	lifecycle, registry, presence = _controller()
	_open(lifecycle, "sid-1", _Client())
	_open(lifecycle, "sid-2", _Client())
	await lifecycle.join("sid-1", "alice")
	new = await lifecycle.join("sid-2", "alice")

	# the old socket's disconnect arrives after supersession
	await lifecycle.close("sid-1")

	assert registry.lookup("alice") is new
	assert presence.is_online("alice")


@pytest.mark.asyncio
async def test_rejoin_same_identity_is_idempotent():
	lifecycle, registry, _ = _controller()
	_open(lifecycle, "sid-1", _Client())

	first = await lifecycle.join("sid-1", "alice")
	second = await lifecycle.join("sid-1", "alice")

	assert first is second
	assert len(registry) == 1


@pytest.mark.asyncio
async def test_join_with_different_identity_is_rejected():
	lifecycle, registry, _ = _controller()
	_open(lifecycle, "sid-1", _Client())
	await lifecycle.join("sid-1", "alice")

	with pytest.raises(JoinRejected) as excinfo:
		await lifecycle.join("sid-1", "mallory")

	assert excinfo.value.detail == "identity_mismatch"
	assert registry.identities() == frozenset({"alice"})


@pytest.mark.asyncio
async def test_join_unknown_sid_is_rejected():
	lifecycle, _, _ = _controller()

	with pytest.raises(JoinRejected):
		await lifecycle.join("missing", "alice")


@pytest.mark.asyncio
async def test_close_deregisters_and_is_terminal():
	lifecycle, registry, presence = _controller()
	conn = _open(lifecycle, "sid-1", _Client())
	await lifecycle.join("sid-1", "alice")

	assert await lifecycle.close("sid-1") is True
	assert await lifecycle.close("sid-1") is False

	assert conn.state is ConnectionState.CLOSED
	assert registry.lookup("alice") is None
	assert not presence.is_online("alice")
	assert lifecycle.connection_for("sid-1") is None


@pytest.mark.asyncio
async def test_logout_notifies_client():
	lifecycle, registry, _ = _controller()
	client = _Client()
	_open(lifecycle, "sid-1", client)
	await lifecycle.join("sid-1", "alice")

	await lifecycle.logout("sid-1")

	assert client.named("session_closed") == [{"reason": "logout"}]
	assert client.disconnected
	assert not registry.is_online("alice")


@pytest.mark.asyncio
async def test_outbound_overflow_closes_connection():
	lifecycle, registry, _ = _controller(queue_size=1)
	client = _Client(gate=asyncio.Event())
	conn = _open(lifecycle, "sid-1", client)
	await lifecycle.join("sid-1", "alice")

	for index in range(5):
		conn.send("tick", {"n": index})
	for _ in range(20):
		await asyncio.sleep(0)

	assert conn.close_reason == "overflow"
	assert client.named("session_closed") == [{"reason": "overflow"}]
	assert not registry.is_online("alice")


@pytest.mark.asyncio
async def test_identity_goes_offline_before_close_notice_is_written():
	lifecycle, registry, presence = _controller()
	release = asyncio.Event()
	client = _Client()

	async def _slow_notice(event, payload):
		if event == "session_closed":
			await release.wait()
		await client.emit(event, payload)

	lifecycle.open("sid-1", _slow_notice, client.disconnect)
	await lifecycle.join("sid-1", "alice")

	logout = asyncio.create_task(lifecycle.logout("sid-1"))
	for _ in range(5):
		await asyncio.sleep(0)

	assert not logout.done()
	assert registry.lookup("alice") is None
	assert not registry.is_online("alice")
	assert "alice" not in presence.snapshot()

	release.set()
	assert await logout is True
	assert client.named("session_closed") == [{"reason": "logout"}]
	assert client.disconnected
