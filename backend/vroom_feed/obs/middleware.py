"""Request id, latency metrics and access logging for every HTTP call."""

from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from vroom_feed.obs import logging as obs_logging
from vroom_feed.obs import metrics
from vroom_feed.settings import settings

REQUEST_ID_HEADER = "X-Request-Id"

_ACCESS_LOG = logging.getLogger("vroom_feed.http")


def _route_template(request: Request) -> str:
	route = request.scope.get("route")
	return getattr(route, "path", None) or request.url.path


async def observe_request(request: Request, call_next: RequestResponseEndpoint) -> Response:
	if not settings.obs_enabled:
		return await call_next(request)

	request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
	request.state.request_id = request_id
	token = obs_logging.bind_context(request_id=request_id)
	started = time.perf_counter()
	status_code = 500
	try:
		response = await call_next(request)
		status_code = response.status_code
		response.headers.setdefault(REQUEST_ID_HEADER, request_id)
		return response
	finally:
		elapsed = time.perf_counter() - started
		route = _route_template(request)
		metrics.observe_request(route, request.method, status_code, elapsed)
		level = logging.ERROR if status_code >= 500 else logging.INFO
		_ACCESS_LOG.log(
			level,
			"http.request",
			extra={
				"method": request.method,
				"route": route,
				"status": status_code,
				"latency_ms": round(elapsed * 1000, 3),
			},
		)
		obs_logging.reset_context(token)


def install(app: FastAPI) -> None:
	app.add_middleware(BaseHTTPMiddleware, dispatch=observe_request)
