"""HTTP instrumentation: request ids, access logs and latency metrics."""

from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from relay.obs import logging as obs_logging
from relay.obs import metrics

REQUEST_ID_HEADER = "X-Request-Id"

# Probes hit these constantly; they are measured but not access-logged.
_QUIET_PREFIXES = ("/health/", "/metrics")


def _route_template(request: Request) -> str:
	route = request.scope.get("route")
	path = getattr(route, "path", None)
	return path or request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
	def __init__(self, app, *, enabled: bool = True) -> None:
		super().__init__(app)
		self._enabled = enabled
		self._logger = obs_logging.get_logger("relay.http")

	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
		request.state.request_id = request_id
		if not self._enabled:
			response = await call_next(request)
			response.headers.setdefault(REQUEST_ID_HEADER, request_id)
			return response

		client_ip = request.client.host if request.client else None
		with obs_logging.log_context(request_id=request_id, route=request.url.path, ip=client_ip):
			started = time.perf_counter()
			status_code = 500
			try:
				response = await call_next(request)
				status_code = response.status_code
			except Exception:
				self._logger.exception("http.unhandled", extra={"method": request.method})
				raise
			finally:
				elapsed = time.perf_counter() - started
				# the route is only resolved once the router has run
				route = _route_template(request)
				metrics.observe_request(route, request.method, status_code, elapsed)
				if not request.url.path.startswith(_QUIET_PREFIXES):
					self._logger.info(
						"http.request",
						extra={
							"method": request.method,
							"route_template": route,
							"status": status_code,
							"latency_ms": round(elapsed * 1000, 3),
						},
					)
		response.headers.setdefault(REQUEST_ID_HEADER, request_id)
		return response


def install(app: FastAPI, *, enabled: bool = True) -> None:
	app.add_middleware(ObservabilityMiddleware, enabled=enabled)
