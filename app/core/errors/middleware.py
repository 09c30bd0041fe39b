"""
FastAPI exception handlers for QuotaGateError and friends.

Every error leaves the gateway in one shape:

    {"error": {"code": <API code>, "message": ..., "timestamp": ..., "details"?: {...}}}

The registry supplies the public code, status and safe message. Internal
detail replaces the safe message only when settings.debug is on.
"""

import logging
from datetime import datetime, timezone

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.core.errors import QuotaGateError, RateLimited
from app.core.errors.registry import error_registry

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_debug(request: Request | None) -> bool:
    if request is not None:
        app_settings = getattr(request.app.state, "settings", None)
        if app_settings is not None:
            return bool(app_settings.debug)
    from app.config import settings
    return settings.debug


def error_response(exc: QuotaGateError, debug: bool = False) -> JSONResponse:
    """Render a QuotaGateError as the structured JSON error response."""
    entry = error_registry.get(exc.code)

    if entry is None:
        logger.error(
            "unregistered_error_code",
            extra={"error.code": exc.code, "error.message": exc.detail},
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "code": "INTERNAL_SERVER_ERROR",
                    "message": "An unexpected error occurred.",
                    "timestamp": _now_iso(),
                }
            },
        )

    log_extra = {
        "error.code": exc.code,
        "error.kind": type(exc).__name__,
        "error.api_code": entry.api_code,
        "error.message": exc.detail,
        "error.retryable": entry.retryable,
        **{f"error.ctx.{k}": v for k, v in exc.context.items()},
    }
    _severity_to_log_fn(entry.severity)(entry.title, extra=log_extra)

    body = {
        "code": entry.api_code,
        "message": exc.detail if (debug and exc.detail) else entry.safe_message,
        "timestamp": _now_iso(),
    }
    if exc.details is not None:
        body["details"] = exc.details

    response = JSONResponse(status_code=entry.http_status, content={"error": body})
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after_s)
    return response


async def quotagate_error_handler(request: Request, exc: QuotaGateError) -> JSONResponse:
    """Convert QuotaGateError into a structured JSON response."""
    return error_response(exc, debug=_is_debug(request))


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Map FastAPI body/query validation failures onto VALIDATION_ERROR (400)."""
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg")}
        for err in exc.errors()
    ]
    logger.info("request_validation_failed", extra={"http.path": request.url.path, "error.count": len(errors)})
    return JSONResponse(
        status_code=400,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "The request is missing required fields or contains invalid values.",
                "timestamp": _now_iso(),
                "details": {"fields": errors},
            }
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all: log with traceback, never leak internals unless debug."""
    logger.exception(
        "unhandled_exception",
        extra={"http.path": request.url.path, "error.kind": type(exc).__name__},
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_SERVER_ERROR",
                "message": str(exc) if _is_debug(request) else "An unexpected error occurred.",
                "timestamp": _now_iso(),
            }
        },
    )


def _severity_to_log_fn(severity: str):
    """Map registry severity to logger method."""
    return {
        "DEBUG": logger.debug,
        "INFO": logger.info,
        "WARN": logger.warning,
        "ERROR": logger.error,
        "CRITICAL": logger.critical,
    }.get(severity, logger.error)
