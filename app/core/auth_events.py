"""
Security audit events.

Auth attempts, token verification results, user lifecycle changes,
suspicious activity and rate-limit violations are emitted as structured
log lines on the ``quotagate.audit`` logger. No token or secret material
is ever written; callers pass identifiers only.
"""

import logging
from typing import Any, Dict, Optional

from starlette.requests import Request

audit_logger = logging.getLogger("quotagate.audit")


def client_ip(request: Request) -> str:
    """Caller address for rate limiting and audit lines.

    X-Forwarded-For is only believed when the socket peer is one of
    ``settings.trusted_proxies``; the nearest hop that is not itself a
    trusted proxy wins.
    """
    peer = request.client.host if request.client else "unknown"
    settings = getattr(request.app.state, "settings", None)
    trusted = set(settings.trusted_proxies) if settings is not None else set()
    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded or peer not in trusted:
        return peer

    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return hops[0] if hops else peer


def client_type(request: Request) -> str:
    """Classify the caller from Origin / User-Agent."""
    origin = request.headers.get("origin") or ""
    if origin.startswith("chrome-extension://"):
        return "chrome_extension"
    user_agent = (request.headers.get("user-agent") or "").lower()
    if "chrome-extension" in user_agent:
        return "chrome_extension"
    if "mozilla" in user_agent:
        return "browser"
    return "api"


def _request_fields(request: Optional[Request]) -> Dict[str, Any]:
    if request is None:
        return {}
    return {
        "client.ip": client_ip(request),
        "client.type": client_type(request),
        "http.path": request.url.path,
    }


def log_auth_attempt(
    request: Optional[Request],
    success: bool,
    email: Optional[str] = None,
    user_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> None:
    extra = {
        "audit.event": "auth_attempt",
        "auth.success": success,
        "user.email": email,
        "user.id": user_id,
        "auth.reason": reason,
        **_request_fields(request),
    }
    if success:
        audit_logger.info("auth_attempt", extra=extra)
    else:
        audit_logger.warning("auth_attempt", extra=extra)


def log_token_verification(
    request: Optional[Request],
    success: bool,
    user_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> None:
    extra = {
        "audit.event": "token_verification",
        "auth.success": success,
        "user.id": user_id,
        "auth.reason": reason,
        **_request_fields(request),
    }
    if success:
        audit_logger.debug("token_verification", extra=extra)
    else:
        audit_logger.warning("token_verification", extra=extra)


def log_user_event(event: str, user_id: str, **details: Any) -> None:
    """User lifecycle: user_created, user_signin, subject_bound, ..."""
    audit_logger.info(
        event,
        extra={"audit.event": event, "user.id": user_id, **{f"user.{k}": v for k, v in details.items()}},
    )


def log_suspicious_activity(activity: str, request: Optional[Request] = None, **details: Any) -> None:
    audit_logger.critical(
        "suspicious_activity",
        extra={
            "audit.event": "suspicious_activity",
            "security.activity": activity,
            **{f"security.{k}": v for k, v in details.items()},
            **_request_fields(request),
        },
    )


def log_rate_limit_violation(request: Request, bucket: str, limit: int) -> None:
    extra = {
        "audit.event": "rate_limit_violation",
        "rate_limit.bucket": bucket,
        "rate_limit.limit": limit,
        **_request_fields(request),
    }
    audit_logger.warning("rate_limit_violation", extra=extra)

    # Repeated hits on the auth endpoints look like credential stuffing
    if request.method == "POST" and request.url.path.startswith("/api/auth"):
        log_suspicious_activity("auth_rate_limit_exceeded", request, bucket=bucket)
