"""
Internal Router: scheduler and admin triggers
=============================================

All endpoints require ``X-Internal-Key`` matching QUOTAGATE_INTERNAL_API_KEY.
With no key configured every call is refused.

    POST /api/internal/usage/reset                           Open records for a period
    POST /api/internal/usage/reset/{user_id}/{period}        Zero one user's counter
    POST /api/internal/subscriptions/expire-lapsed           Expire ended premium periods
    POST /api/internal/housekeeping                          Both of the above
"""

import hmac
import logging
import re
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from app.auth.session_auth import get_container
from app.core.database import get_session_context
from app.core.errors import Forbidden, UserNotFound, ValidationError
from app.models import User
from app.services.container import ServiceContainer
from app.services.housekeeping import run_housekeeping

logger = logging.getLogger(__name__)

PERIOD_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def require_internal_key(
    request: Request,
    x_internal_key: Optional[str] = Header(default=None),
) -> None:
    expected = get_container(request).settings.internal_api_key
    if not expected or not x_internal_key or not hmac.compare_digest(x_internal_key, expected):
        raise Forbidden("internal key missing or wrong")


router = APIRouter(dependencies=[Depends(require_internal_key)])


class ResetRequest(BaseModel):
    period: Optional[str] = Field(default=None, description="YYYY-MM; defaults to the current period")


def _check_period(period: str) -> str:
    if not PERIOD_PATTERN.match(period):
        raise ValidationError(f"invalid period {period!r}, expected YYYY-MM")
    return period


@router.post("/usage/reset", summary="Open usage records for every governed user")
def reset_all_usage(
    body: Optional[ResetRequest] = None,
    container: ServiceContainer = Depends(get_container),
):
    period = _check_period(body.period) if body and body.period else container.meter.current_period()
    created = container.meter.reset_all_usage(period)
    return {"period": period, "created": created}


@router.post("/usage/reset/{user_id}/{period}", summary="Reset one user's usage for a period")
def reset_user_usage(
    user_id: str,
    period: str,
    container: ServiceContainer = Depends(get_container),
):
    _check_period(period)
    with get_session_context(container.engine) as session:
        if session.get(User, user_id) is None:
            raise UserNotFound(context={"user.id": user_id})
    reset = container.meter.reset_user_usage(user_id, period)
    return {
        "success": reset,
        "message": f"Usage reset for {period}" if reset else f"No usage recorded for {period}",
    }


@router.post("/subscriptions/expire-lapsed", summary="Expire premium periods that ended")
def expire_lapsed(container: ServiceContainer = Depends(get_container)):
    return {"expired": container.subscriptions.expire_lapsed()}


@router.post("/housekeeping", summary="Run the full housekeeping pass")
def housekeeping(container: ServiceContainer = Depends(get_container)):
    return run_housekeeping(container)
