"""
Usage Router
============

    POST /api/usage/increment   Admit one question (atomic check-and-increment)
    GET  /api/usage/status      Counters for the current period
    GET  /api/usage/history     Past periods, newest first
"""

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.exc import SQLAlchemyError

from app.auth.session_auth import get_container, get_current_user
from app.core.errors import UsageTrackingFailed
from app.models import User
from app.services.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/increment",
    summary="Record one question against the monthly quota",
    description="Returns 403 USAGE_LIMIT_EXCEEDED with the current counters and the "
    "upgrade path once the limit is reached.",
)
def increment(
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
):
    try:
        snapshot = container.meter.record_usage(user.id)
    except SQLAlchemyError as exc:
        raise UsageTrackingFailed(str(exc), context={"user.id": user.id}) from exc
    return snapshot.to_dict()


@router.get("/status", summary="Current period usage")
def usage_status(
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
):
    return container.meter.get_status(user.id).to_dict()


@router.get("/history", summary="Usage for past periods")
def usage_history(
    months: int = Query(default=6, ge=1, le=24),
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
):
    return {"history": container.meter.get_history(user.id, months)}
