"""
Billing webhook tests
=====================

Tests the webhook pipeline end to end against the local database, with the
Stripe gateway's outbound calls mocked:
1. Signature verification gates everything
2. Subscription lifecycle: created → payment events → deleted
3. Replays and out-of-order deliveries converge
4. Owner resolution failures: permanent → ack, transient → redeliver
5. Checkout / cancel only initiate changes at the provider
6. Lapsed premium periods expire
"""

import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from sqlmodel import select

from app.core.database import get_session_context
from app.core.errors import (
    BillingProviderError,
    BillingProviderUnavailable,
    PaymentFailed,
    SubscriptionNotFound,
    ValidationError,
    WebhookProcessingFailed,
    WebhookSignatureInvalid,
)
from app.models import Subscription, UsageRecord
from app.services.billing_events import BillingEvent, BillingEventKind, SubscriptionFacts, map_status
from app.services.billing_gateway import StripeBillingGateway
from app.services.subscription_service import SubscriptionService
from app.services.usage_service import UsageMeter

from helpers import billing_event, make_settings, sign_payload, subscription_object


# ===========================================================================
# Fixtures
# ===========================================================================

@pytest.fixture
def gateway():
    return StripeBillingGateway(make_settings())


@pytest.fixture
def service(engine, gateway, fixed_clock):
    settings = make_settings()
    meter = UsageMeter(settings, engine, clock=fixed_clock)
    return SubscriptionService(settings, engine, gateway, meter, clock=fixed_clock)


@pytest.fixture
def owned_customer(gateway, mocker):
    """Point cus_1 at a local user id via customer metadata."""

    def _bind(user_id, customer_id="cus_1"):
        return mocker.patch.object(
            gateway,
            "retrieve_customer",
            AsyncMock(return_value={"id": customer_id, "metadata": {"user_id": user_id}}),
        )

    return _bind


async def deliver(service, event_type, obj, event_id="evt_test_1"):
    payload = billing_event(event_type, obj, event_id)
    return await service.handle_billing_event(payload, sign_payload(payload))


def _subscriptions(engine, user_id):
    with get_session_context(engine) as session:
        return session.exec(select(Subscription).where(Subscription.user_id == user_id)).all()


def _usage(engine, user_id):
    with get_session_context(engine) as session:
        row = session.exec(select(UsageRecord).where(UsageRecord.user_id == user_id)).one()
        return row.questions_used, row.questions_limit


# ===========================================================================
# Signature verification
# ===========================================================================

class TestSignature:

    @pytest.mark.asyncio
    async def test_invalid_signature_rejected_without_dispatch(self, service, gateway, make_user, engine, mocker):
        user = make_user(used=30, limit=50)
        retrieve = mocker.patch.object(gateway, "retrieve_customer", AsyncMock())
        payload = billing_event("customer.subscription.created", subscription_object())

        with pytest.raises(WebhookSignatureInvalid):
            await service.handle_billing_event(payload, sign_payload(payload, secret="whsec_wrong"))

        retrieve.assert_not_awaited()
        [row] = _subscriptions(engine, user.id)
        assert row.plan_type == "free"
        assert _usage(engine, user.id) == (30, 50)

    @pytest.mark.asyncio
    async def test_missing_header_rejected(self, service):
        with pytest.raises(WebhookSignatureInvalid):
            await service.handle_billing_event(billing_event("invoice.paid", {}), None)

    @pytest.mark.asyncio
    async def test_stale_timestamp_rejected(self, service):
        payload = billing_event("invoice.paid", {})

        with pytest.raises(WebhookSignatureInvalid):
            await service.handle_billing_event(payload, sign_payload(payload, timestamp=int(time.time()) - 3600))

    @pytest.mark.asyncio
    async def test_unconfigured_secret_never_skips_verification(self, engine, fixed_clock):
        settings = make_settings(stripe_webhook_secret=None)
        service = SubscriptionService(
            settings, engine, StripeBillingGateway(settings), UsageMeter(settings, engine, clock=fixed_clock)
        )
        payload = billing_event("invoice.paid", {})

        with pytest.raises(WebhookSignatureInvalid):
            await service.handle_billing_event(payload, sign_payload(payload))

    @pytest.mark.asyncio
    async def test_signed_non_json_body_is_a_validation_error(self, service):
        payload = b"not json"

        with pytest.raises(ValidationError):
            await service.handle_billing_event(payload, sign_payload(payload))


# ===========================================================================
# Lifecycle
# ===========================================================================

class TestSubscriptionLifecycle:

    @pytest.mark.asyncio
    async def test_created_upgrades_governing_row(self, service, make_user, owned_customer, engine):
        user = make_user(used=30, limit=50)
        owned_customer(user.id)

        ack = await deliver(service, "customer.subscription.created", subscription_object())

        assert ack.applied is True
        assert ack.user_id == user.id
        [row] = _subscriptions(engine, user.id)
        assert row.plan_type == "premium"
        assert row.status == "active"
        assert row.external_subscription_id == "sub_1"
        assert row.external_customer_id == "cus_1"
        assert row.current_period_end is not None
        assert _usage(engine, user.id) == (30, 100)

    @pytest.mark.asyncio
    async def test_replayed_created_event_is_idempotent(self, service, make_user, owned_customer, engine):
        user = make_user(used=30, limit=50)
        owned_customer(user.id)

        await deliver(service, "customer.subscription.created", subscription_object())
        await deliver(service, "customer.subscription.created", subscription_object())

        [row] = _subscriptions(engine, user.id)
        assert (row.plan_type, row.status) == ("premium", "active")
        assert _usage(engine, user.id) == (30, 100)

    @pytest.mark.asyncio
    async def test_deleted_cancels_and_drops_limit_keeping_consumed(self, service, make_user, engine):
        user = make_user(
            plan_type="premium",
            used=30,
            limit=100,
            external_subscription_id="sub_1",
            external_customer_id="cus_1",
        )

        await deliver(service, "customer.subscription.deleted", subscription_object(status="canceled"))

        [row] = _subscriptions(engine, user.id)
        assert row.status == "cancelled"
        assert _usage(engine, user.id) == (30, 50)

    @pytest.mark.asyncio
    async def test_cancelled_is_terminal(self, service, make_user, engine):
        user = make_user(plan_type="premium", used=30, limit=100, external_subscription_id="sub_1")

        await deliver(service, "customer.subscription.deleted", subscription_object(status="canceled"))
        await deliver(service, "customer.subscription.updated", subscription_object(status="active"), "evt_late")

        [row] = _subscriptions(engine, user.id)
        assert row.status == "cancelled"
        assert _usage(engine, user.id) == (30, 50)

    @pytest.mark.asyncio
    async def test_payment_failed_keeps_premium_limit(self, service, gateway, make_user, engine, mocker):
        user = make_user(plan_type="premium", used=5, limit=100, external_subscription_id="sub_1")
        mocker.patch.object(
            gateway, "retrieve_subscription", AsyncMock(return_value=subscription_object(status="past_due"))
        )

        await deliver(service, "invoice.payment_failed", {"id": "in_1", "customer": "cus_1", "subscription": "sub_1"})

        [row] = _subscriptions(engine, user.id)
        assert row.status == "past_due"
        assert _usage(engine, user.id) == (5, 100)

    @pytest.mark.asyncio
    async def test_payment_events_last_write_wins(self, service, gateway, make_user, engine, mocker):
        user = make_user(plan_type="premium", used=5, limit=100, external_subscription_id="sub_1")
        mocker.patch.object(gateway, "retrieve_subscription", AsyncMock(return_value=subscription_object()))
        invoice = {"id": "in_1", "customer": "cus_1", "subscription": "sub_1"}

        await deliver(service, "invoice.payment_failed", invoice, "evt_failed")
        await deliver(service, "invoice.payment_succeeded", invoice, "evt_paid")

        [row] = _subscriptions(engine, user.id)
        assert row.status == "active"

    @pytest.mark.asyncio
    async def test_invoice_for_ended_subscription_does_not_resurrect(self, service, gateway, make_user, engine, mocker):
        user = make_user(plan_type="premium", used=5, limit=100, external_subscription_id="sub_1")
        mocker.patch.object(
            gateway, "retrieve_subscription", AsyncMock(return_value=subscription_object(status="canceled"))
        )

        await deliver(service, "invoice.paid", {"id": "in_1", "customer": "cus_1", "subscription": "sub_1"})

        [row] = _subscriptions(engine, user.id)
        assert row.status == "cancelled"

    @pytest.mark.asyncio
    async def test_incomplete_checkout_waits_for_payment(self, service, gateway, make_user, owned_customer, engine, mocker):
        user = make_user(used=3, limit=50)
        owned_customer(user.id)

        await deliver(service, "customer.subscription.created", subscription_object(status="incomplete"))

        [row] = _subscriptions(engine, user.id)
        assert row.external_subscription_id == "sub_1"
        assert (row.plan_type, row.status) == ("free", "active")
        assert _usage(engine, user.id) == (3, 50)

        mocker.patch.object(gateway, "retrieve_subscription", AsyncMock(return_value=subscription_object()))
        await deliver(service, "invoice.paid", {"id": "in_1", "customer": "cus_1", "subscription": "sub_1"}, "evt_paid")

        [row] = _subscriptions(engine, user.id)
        assert (row.plan_type, row.status) == ("premium", "active")
        assert _usage(engine, user.id) == (3, 100)

    @pytest.mark.asyncio
    async def test_declined_first_payment_does_not_grant_premium(self, service, gateway, make_user, owned_customer, engine, mocker):
        user = make_user(used=3, limit=50)
        owned_customer(user.id)
        await deliver(service, "customer.subscription.created", subscription_object(status="incomplete"))

        mocker.patch.object(
            gateway, "retrieve_subscription", AsyncMock(return_value=subscription_object(status="incomplete"))
        )
        await deliver(
            service,
            "invoice.payment_failed",
            {"id": "in_1", "customer": "cus_1", "subscription": "sub_1"},
            "evt_declined",
        )

        [row] = _subscriptions(engine, user.id)
        assert row.external_subscription_id == "sub_1"
        assert (row.plan_type, row.status) == ("free", "active")
        assert _usage(engine, user.id) == (3, 50)

    @pytest.mark.asyncio
    async def test_abandoned_checkout_keeps_free_row_governing(self, service, make_user, owned_customer, engine):
        user = make_user(used=3, limit=50)
        owned_customer(user.id)
        await deliver(service, "customer.subscription.created", subscription_object(status="incomplete"))

        await deliver(
            service,
            "customer.subscription.updated",
            subscription_object(status="incomplete_expired"),
            "evt_expired",
        )

        [row] = _subscriptions(engine, user.id)
        assert (row.plan_type, row.status) == ("free", "active")
        assert row.external_subscription_id is None
        assert service.get_governing(user.id).id == row.id
        assert _usage(engine, user.id) == (3, 50)

    @pytest.mark.asyncio
    async def test_checkout_completed_refetches_subscription(self, service, gateway, make_user, owned_customer, engine, mocker):
        user = make_user(used=0, limit=50)
        owned_customer(user.id)
        refetch = mocker.patch.object(gateway, "retrieve_subscription", AsyncMock(return_value=subscription_object()))

        await deliver(
            service,
            "checkout.session.completed",
            {"id": "cs_1", "object": "checkout.session", "customer": "cus_1", "subscription": "sub_1"},
        )

        refetch.assert_awaited_once_with("sub_1")
        [row] = _subscriptions(engine, user.id)
        assert row.plan_type == "premium"

    @pytest.mark.asyncio
    async def test_update_records_pending_cancellation(self, service, make_user, engine):
        user = make_user(plan_type="premium", used=0, limit=100, external_subscription_id="sub_1")

        await deliver(service, "customer.subscription.updated", subscription_object(cancel_at_period_end=True))

        [row] = _subscriptions(engine, user.id)
        assert row.cancel_at_period_end is True
        assert row.status == "active"


# ===========================================================================
# Owner resolution and unknown events
# ===========================================================================

class TestResolution:

    @pytest.mark.asyncio
    async def test_update_for_unknown_subscription_without_owner_is_acknowledged(self, service, gateway, make_user, engine, mocker):
        user = make_user(used=0, limit=50)
        mocker.patch.object(gateway, "retrieve_customer", AsyncMock(return_value={"id": "cus_9", "metadata": {}}))

        ack = await deliver(service, "customer.subscription.updated", subscription_object(sub_id="sub_x", customer="cus_9"))

        assert ack.applied is False
        assert ack.to_dict() == {"received": True}
        [row] = _subscriptions(engine, user.id)
        assert row.external_subscription_id is None
        assert row.plan_type == "free"

    @pytest.mark.asyncio
    async def test_deleted_customer_is_a_permanent_failure(self, service, gateway, mocker):
        mocker.patch.object(gateway, "retrieve_customer", AsyncMock(return_value={"id": "cus_1", "deleted": True}))

        ack = await deliver(service, "customer.subscription.created", subscription_object())

        assert ack.applied is False

    @pytest.mark.asyncio
    async def test_provider_outage_asks_for_redelivery(self, service, gateway, make_user, engine, mocker):
        user = make_user(used=0, limit=50)
        mocker.patch.object(gateway, "retrieve_customer", AsyncMock(side_effect=BillingProviderUnavailable("timeout")))

        with pytest.raises(WebhookProcessingFailed):
            await deliver(service, "customer.subscription.created", subscription_object())

        [row] = _subscriptions(engine, user.id)
        assert row.plan_type == "free"

    @pytest.mark.asyncio
    async def test_unrecognized_event_acknowledged(self, service, gateway, mocker):
        retrieve = mocker.patch.object(gateway, "retrieve_customer", AsyncMock())

        ack = await deliver(service, "customer.created", {"id": "cus_1"})

        assert ack.kind == "unrecognized"
        assert ack.applied is False
        retrieve.assert_not_awaited()


# ===========================================================================
# Event decoding
# ===========================================================================

class TestBillingEventDecode:

    def test_known_types_map_to_kinds(self):
        event = BillingEvent.decode({"id": "evt", "type": "invoice.paid", "data": {"object": {"subscription": "sub_1"}}})

        assert event.kind is BillingEventKind.PAYMENT_SUCCEEDED
        assert event.subscription_id == "sub_1"

    def test_invoice_subscription_under_parent(self):
        event = BillingEvent.decode(
            {
                "type": "invoice.payment_failed",
                "data": {"object": {"parent": {"subscription_details": {"subscription": "sub_9"}}}},
            }
        )

        assert event.subscription_id == "sub_9"

    def test_missing_type_rejected(self):
        with pytest.raises(ValidationError):
            BillingEvent.decode({"data": {"object": {}}})

    def test_period_falls_back_to_items(self):
        facts = SubscriptionFacts.from_object(
            {
                "id": "sub_1",
                "customer": {"id": "cus_1"},
                "status": "trialing",
                "items": {"data": [{"current_period_start": 1790000000, "current_period_end": 1792600000}]},
            }
        )

        assert facts.customer_id == "cus_1"
        assert facts.current_period_end is not None
        assert facts.status.value == "trialing"

    def test_status_mapping(self):
        assert map_status("canceled").value == "cancelled"
        assert map_status("unpaid").value == "past_due"
        assert map_status("something_new") is None


# ===========================================================================
# User-initiated operations
# ===========================================================================

class TestUserOperations:

    @pytest.mark.asyncio
    async def test_cancel_requires_paid_subscription(self, service, make_user):
        user = make_user()

        with pytest.raises(SubscriptionNotFound):
            await service.cancel(user)

    @pytest.mark.asyncio
    async def test_cancel_only_initiates(self, service, gateway, make_user, engine, mocker):
        user = make_user(plan_type="premium", external_subscription_id="sub_1")
        modify = mocker.patch.object(
            gateway,
            "cancel_at_period_end",
            AsyncMock(return_value={"id": "sub_1", "cancel_at": 1792600000}),
        )

        result = await service.cancel(user)

        modify.assert_awaited_once_with("sub_1")
        assert result["success"] is True
        assert result["cancelAt"].startswith("2026-")
        [row] = _subscriptions(engine, user.id)
        assert row.status == "active"
        assert row.cancel_at_period_end is False

    @pytest.mark.asyncio
    async def test_checkout_creates_customer_once(self, service, gateway, make_user, engine, mocker):
        user = make_user()
        create_customer = mocker.patch.object(gateway, "create_customer", AsyncMock(return_value={"id": "cus_new"}))
        mocker.patch.object(
            gateway,
            "create_checkout_session",
            AsyncMock(return_value={"id": "cs_1", "url": "https://checkout.test/cs_1"}),
        )

        first = await service.create_checkout_session(user, None, "https://app.test/ok", "https://app.test/cancel")
        await service.create_checkout_session(user, None, "https://app.test/ok", "https://app.test/cancel")

        assert first == {"sessionId": "cs_1", "url": "https://checkout.test/cs_1"}
        create_customer.assert_awaited_once()
        [row] = _subscriptions(engine, user.id)
        assert row.external_customer_id == "cus_new"
        assert row.plan_type == "free"

    @pytest.mark.asyncio
    async def test_checkout_provider_error_is_payment_failed(self, service, gateway, make_user, mocker):
        user = make_user()
        mocker.patch.object(gateway, "create_customer", AsyncMock(side_effect=BillingProviderError("card_declined")))

        with pytest.raises(PaymentFailed):
            await service.create_checkout_session(user, "price_x", "https://app.test/ok", "https://app.test/cancel")


# ===========================================================================
# Lapsed periods
# ===========================================================================

class TestExpireLapsed:

    def test_premium_past_period_end_expires(self, service, make_user, engine):
        user = make_user(
            plan_type="premium",
            used=20,
            limit=100,
            external_subscription_id="sub_1",
            current_period_end=datetime(2026, 10, 1, tzinfo=timezone.utc),
        )

        assert service.expire_lapsed() == 1

        [row] = _subscriptions(engine, user.id)
        assert row.status == "expired"
        assert _usage(engine, user.id) == (20, 50)

    def test_pending_cancellation_and_current_periods_untouched(self, service, make_user, engine):
        make_user(
            email="c@x.com",
            subject="C1",
            plan_type="premium",
            external_subscription_id="sub_c",
            current_period_end=datetime(2026, 10, 1, tzinfo=timezone.utc),
            cancel_at_period_end=True,
        )
        make_user(
            email="d@x.com",
            subject="D1",
            plan_type="premium",
            external_subscription_id="sub_d",
            current_period_end=datetime(2026, 11, 30, tzinfo=timezone.utc),
        )

        assert service.expire_lapsed() == 0
