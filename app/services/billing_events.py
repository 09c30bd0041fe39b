"""
Billing events: decoded once at the webhook boundary.

Stripe event type strings are mapped onto a closed set of kinds; anything
else becomes UNRECOGNIZED and is acknowledged without effect.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from app.core.errors import ValidationError
from app.models import SubscriptionStatus


class BillingEventKind(str, Enum):
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    PAYMENT_FAILED = "invoice.payment_failed"
    CHECKOUT_COMPLETED = "checkout.completed"
    UNRECOGNIZED = "unrecognized"


_STRIPE_TYPES = {
    "customer.subscription.created": BillingEventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": BillingEventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventKind.SUBSCRIPTION_DELETED,
    "invoice.payment_succeeded": BillingEventKind.PAYMENT_SUCCEEDED,
    "invoice.paid": BillingEventKind.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": BillingEventKind.PAYMENT_FAILED,
    "checkout.session.completed": BillingEventKind.CHECKOUT_COMPLETED,
}

# Provider status → local status
_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
}


def map_status(provider_status: Optional[str]) -> Optional[SubscriptionStatus]:
    if not provider_status:
        return None
    return _STATUS_MAP.get(provider_status)


def from_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


@dataclass(frozen=True)
class SubscriptionFacts:
    """The fields of a provider subscription object the gateway mirrors."""

    subscription_id: Optional[str]
    customer_id: Optional[str]
    status: Optional[SubscriptionStatus]
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    awaiting_payment: bool = False  # provider status "incomplete": first invoice unpaid

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "SubscriptionFacts":
        # Newer API versions moved period bounds onto the subscription items
        start = obj.get("current_period_start")
        end = obj.get("current_period_end")
        if start is None or end is None:
            items = (obj.get("items") or {}).get("data") or []
            if items:
                start = start if start is not None else items[0].get("current_period_start")
                end = end if end is not None else items[0].get("current_period_end")
        return cls(
            subscription_id=obj.get("id"),
            customer_id=_id_of(obj.get("customer")),
            status=map_status(obj.get("status")),
            current_period_start=from_timestamp(start),
            current_period_end=from_timestamp(end),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end", False)),
            trial_start=from_timestamp(obj.get("trial_start")),
            trial_end=from_timestamp(obj.get("trial_end")),
            awaiting_payment=obj.get("status") == "incomplete",
        )


@dataclass(frozen=True)
class BillingEvent:
    event_id: Optional[str]
    kind: BillingEventKind
    provider_type: str
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def decode(cls, raw: Any) -> "BillingEvent":
        if not isinstance(raw, dict):
            raise ValidationError("billing event must be a JSON object")
        provider_type = raw.get("type")
        if not isinstance(provider_type, str):
            raise ValidationError("billing event has no type")
        envelope = raw.get("data") or {}
        data = envelope.get("object") if isinstance(envelope, dict) else None
        if not isinstance(data, dict):
            raise ValidationError("billing event data.object must be an object")
        return cls(
            event_id=raw.get("id"),
            kind=_STRIPE_TYPES.get(provider_type, BillingEventKind.UNRECOGNIZED),
            provider_type=provider_type,
            data=data,
        )

    @property
    def customer_id(self) -> Optional[str]:
        return _id_of(self.data.get("customer"))

    @property
    def subscription_id(self) -> Optional[str]:
        """Subscription id for subscription/invoice/checkout objects alike."""
        if self.kind in (
            BillingEventKind.SUBSCRIPTION_CREATED,
            BillingEventKind.SUBSCRIPTION_UPDATED,
            BillingEventKind.SUBSCRIPTION_DELETED,
        ):
            return self.data.get("id")
        sub = _id_of(self.data.get("subscription"))
        if sub:
            return sub
        # Invoice payloads on recent API versions nest it under parent
        parent = self.data.get("parent") or {}
        details = parent.get("subscription_details") or {}
        return _id_of(details.get("subscription"))
