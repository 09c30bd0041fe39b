"""
Billing Webhook Router
======================

    POST /api/webhooks/billing   Stripe events (signature-verified)
    POST /api/webhooks/stripe    Alias for existing Stripe dashboard config

The raw body is passed through untouched: the signature covers the exact
bytes the provider sent. 200 acknowledges (including ignored events),
400 rejects permanently, 500 asks the provider to redeliver.
"""

from fastapi import APIRouter, Depends, Request

from app.auth.session_auth import get_container
from app.services.container import ServiceContainer

router = APIRouter()


@router.post("/billing", summary="Billing provider webhook")
@router.post("/stripe", include_in_schema=False)
async def billing_webhook(request: Request, container: ServiceContainer = Depends(get_container)):
    payload = await request.body()
    ack = await container.subscriptions.handle_billing_event(
        payload,
        request.headers.get("stripe-signature"),
    )
    return ack.to_dict()
