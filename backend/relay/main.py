"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import asyncpg
import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.staticfiles import StaticFiles

from relay.api import messages, ops, users
from relay.api.errors import install_error_handlers
from relay.domain.realtime import container
from relay.domain.realtime.sockets import RelayNamespace
from relay.infra import postgres
from relay.infra.redis import close_redis
from relay.obs import init as obs_init
from relay.obs import metrics as obs_metrics
from relay.settings import settings

logger = logging.getLogger(__name__)


async def _bootstrap_postgres() -> None:
	if not settings.postgres_enabled:
		return
	try:
		pool = await postgres.init_pool()
		await postgres.ensure_schema(pool)
		obs_metrics.mark_postgres(True)
	except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError):
		obs_metrics.mark_postgres(False)
		logger.warning("postgres.bootstrap_failed", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
	await _bootstrap_postgres()
	services = container.get_services()
	try:
		# nobody is connected at boot, so every persisted flag goes offline
		await services.presence.reset_persisted()
	except Exception:
		logger.warning("presence.reset_failed", exc_info=True)
	worker_tasks: list[asyncio.Task] = [
		asyncio.create_task(services.presence.run_forever(), name="relay-presence-dispatcher"),
		asyncio.create_task(
			services.presence.run_reconciler(settings.presence_reconcile_interval_seconds),
			name="relay-presence-reconciler",
		),
	]
	try:
		yield
	finally:
		services.presence.stop()
		await services.lifecycle.shutdown()
		for task in worker_tasks:
			task.cancel()
		await asyncio.gather(*worker_tasks, return_exceptions=True)
		await postgres.close_pool()
		await close_redis()


app = FastAPI(title="Sluglime Relay", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(settings.cors_allow_origins)
if not allow_origins:
	allow_origins = ["http://localhost:3000", "http://localhost:5173"] if not settings.is_prod() else []

# Starlette disallows wildcard '*' with allow_credentials=True.
if "*" in allow_origins:
	allow_origins = [origin for origin in allow_origins if origin != "*"] or ["http://localhost:3000"]

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

upload_root = Path(settings.upload_root).resolve()
upload_root.mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=str(upload_root), check_dir=True), name="uploads")

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
relay_namespace = RelayNamespace("/")
sio.register_namespace(relay_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
obs_init(app)

app.include_router(messages.router)
app.include_router(users.router)
app.include_router(ops.router)
