"""Structured request logging middleware.

Logs every request with:
- method, path, status_code, duration_ms
- request_id (taken from an inbound X-Request-ID, otherwise generated, and
  echoed on the response)

The request_id is bound into structlog's contextvars for the request
scope, so sync events logged while a request waits on the sheet
(update_with_sync, forced overwrites) carry the same id.
"""

from __future__ import annotations

import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request once it completes, with timing and request id."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        start_time = time.monotonic()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.error(
                    "request_error",
                    method=request.method,
                    path=request.url.path,
                    status_code=500,
                    duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                )
                raise

            response.headers[REQUEST_ID_HEADER] = request_id

            if response.status_code >= 500:
                log_method = logger.error
            elif response.status_code >= 400:
                log_method = logger.warning
            else:
                log_method = logger.info

            log_method(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.monotonic() - start_time) * 1000, 2),
            )
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
