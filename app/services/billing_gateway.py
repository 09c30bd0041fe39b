"""
Billing Gateway: Stripe SDK adapter
===================================

PURPOSE:
    The only module that talks to Stripe. Everything above it deals in
    plain dicts and QuotaGate error kinds.

    - verify_signature(): Stripe-Signature (``t=...,v1=...``) HMAC check.
      A missing secret or header is a verification failure, never a skip.
    - retrieve_customer / retrieve_subscription: owner resolution and
      authoritative re-fetch for webhook handlers.
    - create_customer / create_checkout_session / cancel_at_period_end:
      user-initiated operations.

    The SDK is synchronous; every call runs through run_sync with
    billing_timeout_s. The API key is passed per call so no module-global
    stripe.api_key is mutated.

ERRORS:
    timeout, connection, rate-limit, 5xx  → BillingProviderUnavailable
    any other stripe.StripeError          → BillingProviderError
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import stripe

from app.config import Settings
from app.core.async_utils import run_sync
from app.core.errors import BillingProviderError, BillingProviderUnavailable, WebhookSignatureInvalid

logger = logging.getLogger(__name__)


def _to_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeBillingGateway:
    def __init__(self, settings: Settings):
        self._settings = settings

    @property
    def configured(self) -> bool:
        return bool(self._settings.stripe_secret_key)

    # ------------------------------------------------------------------
    # Webhook authenticity
    # ------------------------------------------------------------------

    def verify_signature(self, payload: bytes, signature_header: Optional[str]) -> None:
        secret = self._settings.stripe_webhook_secret
        if not secret:
            raise WebhookSignatureInvalid("webhook secret not configured")
        if not signature_header:
            raise WebhookSignatureInvalid("missing Stripe-Signature header")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature_header,
                secret,
                tolerance=self._settings.stripe_webhook_tolerance_s,
            )
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureInvalid(str(exc)) from exc
        except UnicodeDecodeError as exc:
            raise WebhookSignatureInvalid("payload is not UTF-8") from exc

    # ------------------------------------------------------------------
    # SDK calls
    # ------------------------------------------------------------------

    async def _call(self, operation: str, func, *args, **kwargs) -> Dict[str, Any]:
        try:
            result = await run_sync(
                func,
                *args,
                api_key=self._settings.stripe_secret_key,
                timeout=self._settings.billing_timeout_s,
                **kwargs,
            )
        except TimeoutError as exc:
            logger.warning("Stripe %s timed out: %s", operation, exc)
            raise BillingProviderUnavailable(f"{operation} timed out") from exc
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
            logger.warning("Stripe %s unavailable: %s", operation, exc)
            raise BillingProviderUnavailable(f"{operation}: {exc}") from exc
        except stripe.StripeError as exc:
            logger.error("Stripe %s failed: %s", operation, exc)
            raise BillingProviderError(f"{operation}: {exc}") from exc
        return _to_dict(result)

    async def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        return await self._call("customer.retrieve", stripe.Customer.retrieve, customer_id)

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._call("subscription.retrieve", stripe.Subscription.retrieve, subscription_id)

    async def create_customer(self, email: str, name: Optional[str], user_id: str) -> Dict[str, Any]:
        return await self._call(
            "customer.create",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata={"user_id": user_id},
        )

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        user_id: str,
    ) -> Dict[str, Any]:
        return await self._call(
            "checkout.session.create",
            stripe.checkout.Session.create,
            customer=customer_id,
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=user_id,
            metadata={"user_id": user_id},
            subscription_data={"metadata": {"user_id": user_id}},
        )

    async def cancel_at_period_end(self, subscription_id: str) -> Dict[str, Any]:
        return await self._call(
            "subscription.modify",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
        )
