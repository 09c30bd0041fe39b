"""
Session authentication dependencies.

    get_current_user  Bearer session token required; raises on any failure.
    get_identity      Optional mode; always yields an Identity, never raises.
"""

import logging
from typing import Optional

from fastapi import Request

from app.auth.identity import Identity
from app.core.async_utils import run_sync
from app.core.auth_events import log_token_verification
from app.core.errors import AuthenticationRequired, QuotaGateError
from app.models import User
from app.services.container import ServiceContainer

logger = logging.getLogger(__name__)


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user(request: Request) -> User:
    """FastAPI dependency: the active user behind the bearer session token."""
    token = bearer_token(request)
    if token is None:
        raise AuthenticationRequired("missing bearer token")

    sessions = get_container(request).sessions
    try:
        user = await run_sync(sessions.verify, token, timeout=10)
    except QuotaGateError as exc:
        log_token_verification(request, success=False, reason=type(exc).__name__)
        raise
    log_token_verification(request, success=True, user_id=user.id)
    return user


async def get_identity(request: Request) -> Identity:
    """FastAPI dependency: Authenticated(user) or Anonymous, never an error."""
    sessions = get_container(request).sessions
    return await run_sync(sessions.verify_optional, bearer_token(request), timeout=10)
