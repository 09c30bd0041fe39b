"""
Subscriptions Router
====================

    POST /api/subscriptions/create-checkout-session   Start a hosted checkout
    POST /api/subscriptions/cancel                    Cancel at period end
    GET  /api/subscriptions/status                    Governing plan + usage

Both mutations only initiate the change at the billing provider; the local
subscription row is updated when the provider's webhook arrives.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.auth.session_auth import get_container, get_current_user
from app.core.async_utils import run_sync
from app.models import User
from app.services.container import ServiceContainer

router = APIRouter()


class CheckoutRequest(BaseModel):
    price_id: Optional[str] = Field(default=None, alias="priceId")
    success_url: str = Field(alias="successUrl", min_length=1, max_length=2048)
    cancel_url: str = Field(alias="cancelUrl", min_length=1, max_length=2048)

    model_config = {"populate_by_name": True}


@router.post("/create-checkout-session", summary="Start a subscription checkout")
async def create_checkout_session(
    body: CheckoutRequest,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
):
    return await container.subscriptions.create_checkout_session(
        user,
        price_id=body.price_id,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
    )


@router.post("/cancel", summary="Cancel the paid subscription at period end")
async def cancel_subscription(
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
):
    return await container.subscriptions.cancel(user)


@router.get("/status", summary="Governing subscription and usage")
async def subscription_status(
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
):
    return {"subscription": await run_sync(container.subscriptions.get_status, user.id)}
