"""
MODULE OVERVIEW:
HTTP middleware for the ops endpoints.
Where it fits: Middleware runs on every plain HTTP request. WebSocket traffic
bypasses it, so the chat sockets pay nothing for it.

WHAT IS HAPPENING HERE:
Each request gets an `X-Request-Id` (the caller's own, or a fresh one) and an
`X-Process-Time-Ms` header, and one log line ties the two together.
"""

import time
import uuid
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from loguru import logger

REQUEST_ID_HEADER = "X-Request-Id"


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        start_time = time.perf_counter()

        with logger.contextualize(request_id=request_id):
            response = await call_next(request)
            process_time_ms = (time.perf_counter() - start_time) * 1000

            response.headers[REQUEST_ID_HEADER] = request_id
            response.headers["X-Process-Time-Ms"] = f"{process_time_ms:.2f}"

            # Health probes are noisy; keep them out of the log.
            if request.url.path != "/healthz":
                logger.debug(
                    f"request_id={request_id} {request.method} {request.url.path} "
                    f"status={response.status_code} completed in {process_time_ms:.2f}ms"
                )

        return response
