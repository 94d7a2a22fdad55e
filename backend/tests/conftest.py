import os
import sys
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

os.environ.setdefault("UPLOAD_ROOT", tempfile.mkdtemp(prefix="relay-uploads-"))
os.environ.setdefault("POSTGRES_ENABLED", "false")

from relay.domain.realtime import container
from relay.infra import postgres
from relay.main import app
from relay.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from relay.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Run against the in-memory stores with metrics exposed."""
	original_postgres = settings.postgres_enabled
	original_metrics_public = settings.obs_metrics_public
	settings.postgres_enabled = False
	settings.obs_metrics_public = True
	try:
		yield
	finally:
		settings.postgres_enabled = original_postgres
		settings.obs_metrics_public = original_metrics_public


@pytest.fixture
def services():
	return container.reset()


@pytest_asyncio.fixture
async def api_client(services):
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
