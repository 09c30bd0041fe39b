"""
Request admission middleware.

Runs before routing on every /api request except webhooks and health:

    1. Origin allow-list (when configured). Entries ending in ``*`` match
       by prefix, e.g. ``chrome-extension://*``.
    2. Per-IP window, plus a stricter per-IP window on POST /api/auth/*.
    3. Per-identity window keyed on the bearer token's subject. Only the
       signature is checked here; the route does full verification.

Rejections use the standard error body (403 ORIGIN_NOT_ALLOWED,
429 RATE_LIMITED with Retry-After) and are written to the audit log.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.auth.session_auth import bearer_token
from app.core.auth_events import client_ip, log_rate_limit_violation, log_suspicious_activity
from app.core.errors import OriginNotAllowed, QuotaGateError, RateLimited
from app.core.errors.middleware import error_response

logger = logging.getLogger(__name__)

EXEMPT_PREFIXES = ("/api/webhooks", "/api/health")


def origin_allowed(origin: str, allowed: Iterable[str]) -> bool:
    allowed = list(allowed)
    if not allowed:
        return True
    for entry in allowed:
        if entry.endswith("*"):
            if origin.startswith(entry[:-1]):
                return True
        elif origin == entry:
            return True
    return False


class AdmissionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if request.method == "OPTIONS" or not path.startswith("/api") or path.startswith(EXEMPT_PREFIXES):
            return await call_next(request)

        container = request.app.state.container
        settings = container.settings

        origin = request.headers.get("origin")
        if origin and not origin_allowed(origin, settings.allowed_origins):
            log_suspicious_activity("origin_rejected", request, origin=origin)
            return error_response(OriginNotAllowed(f"origin {origin} not allowed"), settings.debug)

        ip = client_ip(request)
        checks = [("ip", ip)]
        if request.method == "POST" and path.startswith("/api/auth"):
            checks.append(("auth_ip", ip))
        subject = self._token_subject(request, container.sessions)
        if subject:
            checks.append(("identity", subject))

        limiter = container.rate_limiter
        for bucket, key in checks:
            retry_after = limiter.hit(bucket, key)
            if retry_after is not None:
                log_rate_limit_violation(request, bucket, limiter.limits[bucket])
                return error_response(
                    RateLimited(f"{bucket} window full", retry_after_s=retry_after),
                    settings.debug,
                )

        return await call_next(request)

    @staticmethod
    def _token_subject(request: Request, sessions) -> Optional[str]:
        token = bearer_token(request)
        if token is None:
            return None
        try:
            return sessions.decode(token)["sub"]
        except QuotaGateError:
            return None
