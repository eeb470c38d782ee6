from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


logger = logging.getLogger("station_ai.backend.access")


class RequestContextMiddleware(BaseHTTPMiddleware):
	async def dispatch(self, request: Request, call_next) -> Response:
		request_id = request.headers.get("X-Request-ID", "").strip() or uuid.uuid4().hex
		request.state.request_id = request_id
		start = time.perf_counter()
		response = await call_next(request)
		elapsed = time.perf_counter() - start
		response.headers["X-Request-ID"] = request_id
		response.headers["X-Process-Time"] = f"{elapsed:.6f}"
		logger.info(
			"%s %s -> %d in %.1f ms (request_id=%s)",
			request.method,
			request.url.path,
			response.status_code,
			elapsed * 1000,
			request_id,
		)
		return response
