"""
Per-request correlation ids and the access log line.

Callers may supply x-request-id / x-correlation-id; otherwise fresh ids are
minted. Both are bound in contextvars for the duration of the request and
echoed on the response.
"""
from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.auth_events import client_type
from app.core.structured_logging import correlation_id_var, request_id_var

logger = logging.getLogger(__name__)

_ID_HEADERS = (("x-request-id", request_id_var), ("x-correlation-id", correlation_id_var))


class CorrelationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        ids = {header: request.headers.get(header) or uuid.uuid4().hex for header, _ in _ID_HEADERS}
        tokens = [(var, var.set(ids[header])) for header, var in _ID_HEADERS]

        started = time.perf_counter()
        status_code = None
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            logger.info(
                "request_completed",
                extra={
                    "http.method": request.method,
                    "http.path": request.url.path,
                    "http.status_code": status_code,
                    "client.type": client_type(request),
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
            for var, token in reversed(tokens):
                var.reset(token)

        for header, value in ids.items():
            response.headers[header] = value
        return response
