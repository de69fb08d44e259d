"""Request metrics and the structured access log."""

from __future__ import annotations

import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from chatcore.obs import logging as obs_logging
from chatcore.obs import metrics

# Probe and scrape traffic is counted but not access-logged.
_QUIET_PATHS = frozenset({"/health/live", "/health/ready", "/metrics"})


def _route_template(request: Request) -> str:
	route = request.scope.get("route")
	path = getattr(route, "path", None)
	return path or request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
	def __init__(self, app) -> None:
		super().__init__(app)
		self._logger = obs_logging.get_logger("chatcore.http")

	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		client = request.client
		tokens = obs_logging.bind_context(client_ip=client.host if client else None)
		start = time.perf_counter()
		status_code = 500
		try:
			response = await call_next(request)
			status_code = response.status_code
			return response
		except Exception:
			self._logger.exception("http_request_error", extra={"method": request.method, "path": request.url.path})
			raise
		finally:
			elapsed = time.perf_counter() - start
			route = _route_template(request)
			metrics.observe_request(route, request.method, status_code, elapsed)
			if request.url.path not in _QUIET_PATHS:
				self._logger.info(
					"http_request",
					extra={
						"status": status_code,
						"method": request.method,
						"latency_ms": round(elapsed * 1000, 3),
						"route": route,
						"user_id": getattr(request.state, "user_id", None),
						"request_id": getattr(request.state, "request_id", None) or obs_logging.current_request_id(),
					},
				)
			obs_logging.reset_context(tokens)


def install(app) -> None:
	app.add_middleware(ObservabilityMiddleware)
