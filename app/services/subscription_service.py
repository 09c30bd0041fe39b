"""
Subscription Service: billing state machine
===========================================

PURPOSE:
    Mirrors the payment processor's subscription state into the local
    ``subscriptions`` table from asynchronous, possibly duplicated and
    out-of-order webhook deliveries, and keeps the usage limit of the
    current period in line with the result.

WEBHOOK PIPELINE (handle_billing_event):
    1. Verify the Stripe-Signature over the raw body. Failure → 400, nothing
       is parsed or dispatched.
    2. Decode once into a BillingEvent. Unknown kinds are acknowledged.
    3. Dispatch to the handler for the kind.
    4. Recompute the current-period limit from the resulting local state.

    Owner resolution (customer → metadata.user_id → local user) failing
    permanently is logged and acknowledged. A provider outage during owner
    resolution or re-fetch produces a failure acknowledgment (500) so the
    provider redelivers; nothing is retried in-process.

CONVERGENCE RULES:
    - Match by external subscription id first (natural key).
    - ``cancelled`` is terminal: later events for that subscription do not
      change its row.
    - A non-governing row is revived only while the user has no other
      governing row (the partial unique index enforces the same thing).
    - Any row bound to an external subscription is the premium plan.
    - Otherwise status is last-write-wins by delivery order.

USER OPERATIONS:
    create_checkout_session() and cancel() only *initiate* changes at the
    provider. Local state follows when the corresponding webhook arrives.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.config import Settings
from app.core.async_utils import run_sync
from app.core.database import get_session_context
from app.core.errors import (
    BillingProviderError,
    BillingProviderUnavailable,
    OwnerResolutionFailed,
    PaymentFailed,
    QuotaGateError,
    SubscriptionNotFound,
    ValidationError,
    WebhookProcessingFailed,
)
from app.models import GOVERNING_STATUSES, PlanType, Subscription, SubscriptionStatus, User
from app.services.billing_events import BillingEvent, BillingEventKind, SubscriptionFacts, from_timestamp
from app.services.billing_gateway import StripeBillingGateway
from app.services.usage_service import UsageMeter

logger = logging.getLogger(__name__)

__all__ = ["SubscriptionService", "WebhookAck"]


@dataclass(frozen=True)
class WebhookAck:
    kind: str
    applied: bool
    user_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"received": True}


class SubscriptionService:
    def __init__(
        self,
        settings: Settings,
        engine: Engine,
        gateway: StripeBillingGateway,
        meter: UsageMeter,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._settings = settings
        self._engine = engine
        self._gateway = gateway
        self._meter = meter
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._handlers: Dict[BillingEventKind, Callable[[BillingEvent], Awaitable[Optional[str]]]] = {
            BillingEventKind.SUBSCRIPTION_CREATED: self._on_subscription_created,
            BillingEventKind.CHECKOUT_COMPLETED: self._on_checkout_completed,
            BillingEventKind.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            BillingEventKind.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            BillingEventKind.PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            BillingEventKind.PAYMENT_FAILED: self._on_payment_failed,
        }

    # ------------------------------------------------------------------
    # Webhook entry point
    # ------------------------------------------------------------------

    async def handle_billing_event(self, payload: bytes, signature_header: Optional[str]) -> WebhookAck:
        self._gateway.verify_signature(payload, signature_header)

        try:
            raw = json.loads(payload)
        except ValueError as exc:
            raise ValidationError("webhook body is not valid JSON") from exc
        event = BillingEvent.decode(raw)

        log_extra = {"billing.event_id": event.event_id, "billing.type": event.provider_type}
        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.info("billing_event_ignored", extra=log_extra)
            return WebhookAck(kind=event.kind.value, applied=False)

        try:
            user_id = await handler(event)
            if user_id is not None:
                await run_sync(self._meter.refresh_limit, user_id)
        except OwnerResolutionFailed as exc:
            if exc.transient:
                raise WebhookProcessingFailed(str(exc), context=log_extra) from exc
            logger.warning("billing_event_owner_unresolved", extra={**log_extra, "error.message": exc.detail})
            return WebhookAck(kind=event.kind.value, applied=False)
        except QuotaGateError as exc:
            raise WebhookProcessingFailed(str(exc), context=log_extra) from exc
        except Exception as exc:
            logger.exception("billing_event_handler_crashed", extra=log_extra)
            raise WebhookProcessingFailed(str(exc), context=log_extra) from exc

        logger.info("billing_event_processed", extra={**log_extra, "user.id": user_id, "billing.applied": user_id is not None})
        return WebhookAck(kind=event.kind.value, applied=user_id is not None, user_id=user_id)

    # ------------------------------------------------------------------
    # Owner resolution
    # ------------------------------------------------------------------

    async def _resolve_owner(self, customer_id: Optional[str]) -> str:
        if not customer_id:
            raise OwnerResolutionFailed("event carries no customer")
        try:
            customer = await self._gateway.retrieve_customer(customer_id)
        except BillingProviderUnavailable as exc:
            raise OwnerResolutionFailed(str(exc), transient=True) from exc
        except BillingProviderError as exc:
            raise OwnerResolutionFailed(str(exc)) from exc

        if customer.get("deleted"):
            raise OwnerResolutionFailed(f"customer {customer_id} deleted")
        user_id = (customer.get("metadata") or {}).get("user_id")
        if not user_id:
            raise OwnerResolutionFailed(f"customer {customer_id} has no user_id metadata")
        if not await run_sync(self._user_exists, user_id):
            raise OwnerResolutionFailed(f"customer {customer_id} maps to unknown user {user_id}")
        return user_id

    def _user_exists(self, user_id: str) -> bool:
        with get_session_context(self._engine) as session:
            return session.get(User, user_id) is not None

    # ------------------------------------------------------------------
    # Handlers: each returns the affected user id, or None when no row changed hands
    # ------------------------------------------------------------------

    async def _on_subscription_created(self, event: BillingEvent) -> Optional[str]:
        facts = SubscriptionFacts.from_object(event.data)
        owner = await self._resolve_owner(facts.customer_id)
        return await run_sync(self._mirror, facts, owner, None, True)

    async def _on_checkout_completed(self, event: BillingEvent) -> Optional[str]:
        sub_id = event.subscription_id
        if not sub_id:
            logger.info("checkout_without_subscription", extra={"billing.event_id": event.event_id})
            return None
        facts = SubscriptionFacts.from_object(await self._gateway.retrieve_subscription(sub_id))
        owner = await self._resolve_owner(facts.customer_id or event.customer_id)
        return await run_sync(self._mirror, facts, owner, None, True)

    async def _on_subscription_updated(self, event: BillingEvent) -> Optional[str]:
        facts = SubscriptionFacts.from_object(event.data)
        return await self._mirror_with_fallback(facts, None, event)

    async def _on_subscription_deleted(self, event: BillingEvent) -> Optional[str]:
        facts = SubscriptionFacts.from_object(event.data)
        user_id = await run_sync(self._mirror, facts, None, SubscriptionStatus.CANCELLED, False)
        if user_id is None:
            logger.warning("subscription_deleted_unmatched", extra={"billing.subscription_id": facts.subscription_id})
        return user_id

    async def _on_payment_succeeded(self, event: BillingEvent) -> Optional[str]:
        return await self._on_payment(event, SubscriptionStatus.ACTIVE)

    async def _on_payment_failed(self, event: BillingEvent) -> Optional[str]:
        return await self._on_payment(event, SubscriptionStatus.PAST_DUE)

    async def _on_payment(self, event: BillingEvent, status: SubscriptionStatus) -> Optional[str]:
        sub_id = event.subscription_id
        if not sub_id:
            logger.info("invoice_without_subscription", extra={"billing.event_id": event.event_id})
            return None
        facts = SubscriptionFacts.from_object(await self._gateway.retrieve_subscription(sub_id))
        # An invoice for an already-ended subscription must not resurrect it
        if facts.status is not None and facts.status.value not in GOVERNING_STATUSES:
            status = facts.status
        return await self._mirror_with_fallback(facts, status, event)

    async def _mirror_with_fallback(
        self,
        facts: SubscriptionFacts,
        status: Optional[SubscriptionStatus],
        event: BillingEvent,
    ) -> Optional[str]:
        """Natural-key match first; only then resolve the owner and use their governing row."""
        user_id = await run_sync(self._mirror, facts, None, status, False)
        if user_id is not None:
            return user_id
        owner = await self._resolve_owner(facts.customer_id or event.customer_id)
        user_id = await run_sync(self._mirror, facts, owner, status, False)
        if user_id is None:
            # Never create a subscription from an update: creation is the created/checkout path
            logger.warning(
                "billing_event_no_matching_subscription",
                extra={"billing.event_id": event.event_id, "user.id": owner, "billing.subscription_id": facts.subscription_id},
            )
        return user_id

    # ------------------------------------------------------------------
    # Local mirror (runs in a worker thread)
    # ------------------------------------------------------------------

    def _mirror(
        self,
        facts: SubscriptionFacts,
        owner_id: Optional[str],
        status: Optional[SubscriptionStatus],
        create: bool,
    ) -> Optional[str]:
        """Apply *facts* to the matching row and return its user id.

        Matching: external subscription id, then (when *owner_id* is given)
        the owner's governing row, then (when *create*) a new row.
        """
        now = self._clock()
        new_status = status or facts.status

        with get_session_context(self._engine) as session:
            row = None
            if facts.subscription_id:
                row = session.exec(
                    select(Subscription).where(Subscription.external_subscription_id == facts.subscription_id)
                ).first()
            if row is None and owner_id is not None:
                row = self._governing_row(session, owner_id)
            if row is None:
                if not create or owner_id is None:
                    return None
                row = Subscription(
                    user_id=owner_id,
                    plan_type=PlanType.FREE.value,
                    status=SubscriptionStatus.ACTIVE.value,
                    created_at=now,
                )

            log_extra = {"user.id": row.user_id, "billing.subscription_id": facts.subscription_id}

            if row.status == SubscriptionStatus.CANCELLED.value:
                logger.info("subscription_terminal_ignored", extra={**log_extra, "billing.status": new_status})
                return row.user_id

            if (
                new_status is not None
                and new_status.value in GOVERNING_STATUSES
                and row.status not in GOVERNING_STATUSES
            ):
                other = self._governing_row(session, row.user_id)
                if other is not None and other.id != row.id:
                    logger.warning("subscription_revive_blocked", extra={**log_extra, "billing.governing_id": other.id})
                    return row.user_id

            # A free row only ever carries an unpaid checkout; when that ends, drop it and stay free
            if (
                row.plan_type == PlanType.FREE.value
                and new_status is not None
                and new_status.value not in GOVERNING_STATUSES
            ):
                if facts.subscription_id and row.external_subscription_id == facts.subscription_id:
                    row.external_subscription_id = None
                    row.updated_at = now
                    session.add(row)
                    session.commit()
                    logger.info("checkout_abandoned", extra={**log_extra, "billing.status": new_status.value})
                return row.user_id

            if facts.subscription_id and row.external_subscription_id != facts.subscription_id:
                if row.external_subscription_id:
                    logger.warning(
                        "subscription_rebound",
                        extra={**log_extra, "billing.previous_subscription_id": row.external_subscription_id},
                    )
                row.external_subscription_id = facts.subscription_id
            if facts.customer_id:
                row.external_customer_id = facts.customer_id

            # First invoice still unpaid: bind ids, keep the current plan until a payment succeeds
            if facts.awaiting_payment and status is not SubscriptionStatus.ACTIVE:
                row.updated_at = now
                session.add(row)
                session.commit()
                return row.user_id

            if new_status is not None:
                row.status = new_status.value
            if row.external_subscription_id:
                row.plan_type = PlanType.PREMIUM.value
            if facts.current_period_start is not None:
                row.current_period_start = facts.current_period_start
            if facts.current_period_end is not None:
                row.current_period_end = facts.current_period_end
            row.cancel_at_period_end = facts.cancel_at_period_end
            if facts.trial_start is not None:
                row.trial_start = facts.trial_start
            if facts.trial_end is not None:
                row.trial_end = facts.trial_end
            row.updated_at = now

            session.add(row)
            session.commit()
            logger.info(
                "subscription_mirrored",
                extra={**log_extra, "billing.status": row.status, "billing.plan": row.plan_type},
            )
            return row.user_id

    @staticmethod
    def _governing_row(session: Session, user_id: str) -> Optional[Subscription]:
        return session.exec(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .where(col(Subscription.status).in_(GOVERNING_STATUSES))
        ).first()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_governing(self, user_id: str) -> Optional[Subscription]:
        with get_session_context(self._engine) as session:
            return self._governing_row(session, user_id)

    def get_status(self, user_id: str) -> Dict[str, Any]:
        subscription = self.get_governing(user_id)
        usage = self._meter.get_status(user_id)
        if subscription is None:
            body = {
                "planType": PlanType.FREE.value,
                "status": SubscriptionStatus.ACTIVE.value,
                "currentPeriodStart": None,
                "currentPeriodEnd": None,
                "cancelAtPeriodEnd": False,
                "trialEnd": None,
            }
        else:
            body = subscription.public_dict()
        body.update(
            {
                "questionsUsed": usage.questions_used,
                "questionsLimit": usage.questions_limit,
                "nextReset": usage.next_reset.isoformat(),
            }
        )
        return body

    # ------------------------------------------------------------------
    # User-initiated operations
    # ------------------------------------------------------------------

    async def create_checkout_session(
        self,
        user: User,
        price_id: Optional[str],
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, Any]:
        price_id = price_id or self._settings.stripe_price_id
        if not price_id:
            raise ValidationError("priceId is required")
        if not self._gateway.configured:
            raise PaymentFailed("billing provider not configured")

        try:
            customer_id = await run_sync(self._known_customer_id, user.id)
            if not customer_id:
                customer = await self._gateway.create_customer(user.email, user.display_name, user.id)
                customer_id = customer["id"]
                await run_sync(self._store_customer_id, user.id, customer_id)
            session = await self._gateway.create_checkout_session(
                customer_id=customer_id,
                price_id=price_id,
                success_url=success_url,
                cancel_url=cancel_url,
                user_id=user.id,
            )
        except (BillingProviderError, BillingProviderUnavailable) as exc:
            raise PaymentFailed(str(exc), context={"user.id": user.id}) from exc

        logger.info("checkout_session_created", extra={"user.id": user.id, "billing.customer_id": customer_id})
        return {"sessionId": session["id"], "url": session.get("url")}

    def _known_customer_id(self, user_id: str) -> Optional[str]:
        with get_session_context(self._engine) as session:
            row = session.exec(
                select(Subscription)
                .where(Subscription.user_id == user_id)
                .where(col(Subscription.external_customer_id).is_not(None))
                .order_by(col(Subscription.updated_at).desc())
            ).first()
            return row.external_customer_id if row else None

    def _store_customer_id(self, user_id: str, customer_id: str) -> None:
        now = self._clock()
        for _ in range(2):
            with get_session_context(self._engine) as session:
                row = self._governing_row(session, user_id)
                if row is None:
                    row = Subscription(
                        user_id=user_id,
                        plan_type=PlanType.FREE.value,
                        status=SubscriptionStatus.ACTIVE.value,
                        created_at=now,
                    )
                row.external_customer_id = customer_id
                row.updated_at = now
                session.add(row)
                try:
                    session.commit()
                    return
                except IntegrityError:
                    # A governing row appeared concurrently; attach to it instead
                    session.rollback()
        logger.warning("customer_id_not_stored", extra={"user.id": user_id, "billing.customer_id": customer_id})

    async def cancel(self, user: User) -> Dict[str, Any]:
        """Ask the provider to cancel at period end. The webhook mirrors the result."""
        subscription = await run_sync(self.get_governing, user.id)
        if (
            subscription is None
            or not subscription.external_subscription_id
            or subscription.plan_type != PlanType.PREMIUM.value
        ):
            raise SubscriptionNotFound(context={"user.id": user.id})

        result = await self._gateway.cancel_at_period_end(subscription.external_subscription_id)
        cancel_at = from_timestamp(result.get("cancel_at") or result.get("current_period_end"))
        if cancel_at is None:
            cancel_at = subscription.current_period_end
        logger.info(
            "subscription_cancel_requested",
            extra={"user.id": user.id, "billing.subscription_id": subscription.external_subscription_id},
        )
        return {"success": True, "cancelAt": cancel_at.isoformat() if cancel_at else None}

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def expire_lapsed(self, now: Optional[datetime] = None) -> int:
        """Expire premium rows whose period ended without a pending cancellation.

        Returns the number of rows expired. Usage limits of affected users are
        recomputed (they fall back to free).
        """
        now = now or self._clock()
        with get_session_context(self._engine) as session:
            rows = session.exec(
                select(Subscription)
                .where(col(Subscription.status).in_(GOVERNING_STATUSES))
                .where(Subscription.plan_type == PlanType.PREMIUM.value)
                .where(col(Subscription.current_period_end).is_not(None))
                .where(col(Subscription.current_period_end) < now)
                .where(Subscription.cancel_at_period_end == False)  # noqa: E712
            ).all()
            user_ids = []
            for row in rows:
                row.status = SubscriptionStatus.EXPIRED.value
                row.updated_at = now
                session.add(row)
                user_ids.append(row.user_id)
            session.commit()

        for user_id in user_ids:
            self._meter.refresh_limit(user_id)
        if user_ids:
            logger.info("subscriptions_expired", extra={"billing.expired": len(user_ids)})
        return len(user_ids)
