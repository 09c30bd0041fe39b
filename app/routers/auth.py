"""
Auth Router: sign-in, refresh, sign-out, profile
================================================

    POST /api/auth/signin          External credential + claimed identity → session
    POST /api/auth/google-signin   Alias of /signin (extension clients)
    POST /api/auth/refresh         Refresh token → new access token
    POST /api/auth/signout         Audit only (sessions are stateless)
    GET  /api/auth/profile         Current user + subscription summary
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from app.auth.session_auth import get_container, get_current_user
from app.core.async_utils import run_sync
from app.core.auth_events import log_user_event
from app.models import User
from app.services.container import ServiceContainer
from app.services.identity_service import ClaimedIdentity
from app.services.session_service import TokenClass

logger = logging.getLogger(__name__)

router = APIRouter()


class ClaimedUserInfo(BaseModel):
    id: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    name: Optional[str] = Field(default=None, max_length=255)
    picture: Optional[str] = Field(default=None, max_length=1024)


class SignInRequest(BaseModel):
    access_token: str = Field(alias="accessToken", min_length=1)
    user_info: ClaimedUserInfo = Field(alias="userInfo")

    model_config = {"populate_by_name": True}


class RefreshRequest(BaseModel):
    refresh_token: str = Field(alias="refreshToken", min_length=1)

    model_config = {"populate_by_name": True}


@router.post(
    "/signin",
    summary="Sign in with an identity-provider access token",
    description="Verifies the token with the provider, cross-checks the claimed identity, "
    "creates the account on first sign-in and returns a session.",
)
@router.post("/google-signin", include_in_schema=False)
async def sign_in(
    body: SignInRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container),
):
    claimed = ClaimedIdentity(
        subject_id=body.user_info.id,
        email=body.user_info.email,
        display_name=body.user_info.name,
        avatar_url=body.user_info.picture,
    )
    result = await container.identity.bind_identity(body.access_token, claimed, request)

    sessions = container.sessions
    subscription = await run_sync(container.subscriptions.get_status, result.user.id)
    return {
        "token": sessions.issue(result.user.id, TokenClass.ACCESS),
        "refreshToken": sessions.issue(result.user.id, TokenClass.REFRESH),
        "user": result.user.public_dict(),
        "subscription": subscription,
        "isNewUser": result.is_new_user,
    }


@router.post("/refresh", summary="Exchange a refresh token for a new access token")
async def refresh(body: RefreshRequest, container: ServiceContainer = Depends(get_container)):
    token = await run_sync(container.sessions.refresh, body.refresh_token)
    return {"token": token}


@router.post("/signout", summary="Sign out (client discards its tokens)")
async def sign_out(user: User = Depends(get_current_user)):
    log_user_event("user_signout", user.id)
    return {
        "message": "Signed out successfully",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/profile", summary="Current user profile and subscription")
def profile(
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
):
    return {
        "user": user.public_dict(),
        "subscription": container.subscriptions.get_status(user.id),
    }
