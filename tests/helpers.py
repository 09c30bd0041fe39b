"""Shared constants and builders for the test suite (imported after conftest sets the environment)."""

import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timezone

from app.config import Settings

WEBHOOK_SECRET = "whsec_test_secret"
INTERNAL_KEY = "internal-test-key"

FIXED_NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


def make_settings(**overrides) -> Settings:
    """Explicit test Settings; never reads a .env file."""
    values = dict(
        session_secret="test-session-secret-not-for-production-use",
        free_questions_limit=50,
        premium_questions_limit=100,
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_price_id="price_test_premium",
        upstream_api_key="upstream-test-key",
        upstream_chat_url="https://upstream.test/v1/chat/completions",
        internal_api_key=INTERNAL_KEY,
        log_dir=os.environ["QUOTAGATE_LOG_DIR"],
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header (t=...,v1=...) for *payload*."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    mac = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={mac}"


def billing_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


def subscription_object(
    sub_id: str = "sub_1",
    customer: str = "cus_1",
    status: str = "active",
    period_start: int = 1790000000,
    period_end: int = 1792600000,
    cancel_at_period_end: bool = False,
) -> dict:
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "cancel_at_period_end": cancel_at_period_end,
    }
