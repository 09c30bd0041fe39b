"""
HTTP API tests
==============

Exercises the routers through FastAPI's TestClient with the real service
container; only the identity provider, Stripe and the upstream model are
mocked. Checks status codes and the shared error body shape:

    {"error": {"code": ..., "message": ..., "timestamp": ..., "details"?: ...}}
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from app.core.database import get_session_context
from app.main import create_app
from app.models import User
from app.services.chat_proxy import UpstreamResponse
from app.services.identity_provider import VerifiedIdentity
from app.services.session_service import TokenClass
from app.services.usage_service import period_key

from helpers import INTERNAL_KEY, billing_event, make_settings, sign_payload

COMPLETION = {"id": "chatcmpl-1", "choices": [{"message": {"role": "assistant", "content": "Hi"}}]}


# ===========================================================================
# Fixtures
# ===========================================================================

@pytest.fixture
def app_client(engine):
    """Yield a started TestClient for an app built with setting overrides."""
    clients = []

    def _start(**overrides):
        client = TestClient(create_app(make_settings(**overrides), engine))
        client.__enter__()
        clients.append(client)
        return client

    yield _start
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(app_client):
    return app_client()


@pytest.fixture
def container(client):
    return client.app.state.container


@pytest.fixture
def auth_for(container):
    """Bearer headers for an existing user."""

    def _headers(user):
        return {"Authorization": f"Bearer {container.sessions.issue(user.id)}"}

    return _headers


def _current_period():
    return period_key(datetime.now(timezone.utc))


def _error(response):
    return response.json()["error"]


SIGNIN_BODY = {"accessToken": "ya29.valid", "userInfo": {"id": "S1", "email": "a@x.com", "name": "Ada"}}


# ===========================================================================
# Health
# ===========================================================================

class TestHealth:

    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert "x-request-id" in response.headers

    def test_ready(self, client):
        response = client.get("/api/health/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "ready", "database": "ok"}


# ===========================================================================
# Auth
# ===========================================================================

class TestAuthRoutes:

    def test_signin_creates_account_and_session(self, client, container, mocker):
        mocker.patch.object(
            container.identity_provider,
            "introspect",
            AsyncMock(return_value=VerifiedIdentity(subject_id="S1", email="a@x.com", email_verified=True)),
        )

        response = client.post("/api/auth/signin", json=SIGNIN_BODY)

        assert response.status_code == 200
        body = response.json()
        assert body["isNewUser"] is True
        assert body["user"]["email"] == "a@x.com"
        assert body["subscription"]["planType"] == "free"
        assert body["subscription"]["questionsLimit"] == 50
        assert container.sessions.decode(body["refreshToken"], TokenClass.REFRESH)["sub"] == body["user"]["id"]

        status = client.get("/api/usage/status", headers={"Authorization": f"Bearer {body['token']}"})
        assert status.status_code == 200
        assert status.json()["questionsUsed"] == 0

    def test_google_signin_alias(self, client, container, mocker):
        mocker.patch.object(
            container.identity_provider,
            "introspect",
            AsyncMock(return_value=VerifiedIdentity(subject_id="S1", email="a@x.com")),
        )

        assert client.post("/api/auth/google-signin", json=SIGNIN_BODY).status_code == 200

    def test_signin_spoof_is_auth_failed(self, client, container, mocker):
        mocker.patch.object(
            container.identity_provider,
            "introspect",
            AsyncMock(return_value=VerifiedIdentity(subject_id="S-other", email="a@x.com")),
        )

        response = client.post("/api/auth/signin", json=SIGNIN_BODY)

        assert response.status_code == 401
        assert _error(response)["code"] == "AUTH_FAILED"

    def test_signin_deactivated_account_gets_no_session(self, client, container, make_user, engine, mocker):
        user = make_user(email="a@x.com", subject="S1")
        with get_session_context(engine) as session:
            row = session.get(User, user.id)
            row.is_active = False
            session.add(row)
            session.commit()
        mocker.patch.object(
            container.identity_provider,
            "introspect",
            AsyncMock(return_value=VerifiedIdentity(subject_id="S1", email="a@x.com")),
        )

        response = client.post("/api/auth/signin", json=SIGNIN_BODY)

        assert response.status_code == 401
        assert _error(response)["code"] == "USER_INACTIVE"
        assert "token" not in response.json()

    def test_signin_missing_fields_is_validation_error(self, client):
        response = client.post("/api/auth/signin", json={"accessToken": "ya29.valid"})

        assert response.status_code == 400
        assert _error(response)["code"] == "VALIDATION_ERROR"
        assert _error(response)["details"]["fields"]

    def test_refresh(self, client, container, make_user):
        user = make_user()
        refresh_token = container.sessions.issue(user.id, TokenClass.REFRESH)

        response = client.post("/api/auth/refresh", json={"refreshToken": refresh_token})

        assert response.status_code == 200
        assert container.sessions.verify(response.json()["token"]).id == user.id

    def test_access_token_cannot_refresh(self, client, container, make_user):
        user = make_user()

        response = client.post("/api/auth/refresh", json={"refreshToken": container.sessions.issue(user.id)})

        assert response.status_code == 401
        assert _error(response)["code"] == "INVALID_TOKEN"

    def test_profile_and_signout(self, client, make_user, auth_for):
        user = make_user()

        profile = client.get("/api/auth/profile", headers=auth_for(user))
        signout = client.post("/api/auth/signout", headers=auth_for(user))

        assert profile.status_code == 200
        assert profile.json()["user"]["id"] == user.id
        assert profile.json()["subscription"]["planType"] == "free"
        assert signout.status_code == 200
        assert signout.json()["message"] == "Signed out successfully"

    def test_missing_token_is_unauthorized(self, client):
        response = client.get("/api/auth/profile")

        assert response.status_code == 401
        assert _error(response)["code"] == "UNAUTHORIZED"

    def test_garbage_token_is_invalid(self, client):
        response = client.get("/api/auth/profile", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401
        assert _error(response)["code"] == "INVALID_TOKEN"


# ===========================================================================
# Usage
# ===========================================================================

class TestUsageRoutes:

    def test_increment_until_limit(self, client, make_user, auth_for):
        user = make_user(used=49, limit=50, period=_current_period())

        first = client.post("/api/usage/increment", headers=auth_for(user))
        second = client.post("/api/usage/increment", headers=auth_for(user))

        assert first.status_code == 200
        assert first.json() == {"questionsUsed": 50, "questionsLimit": 50, "canAskMore": False}
        assert second.status_code == 403
        error = _error(second)
        assert error["code"] == "USAGE_LIMIT_EXCEEDED"
        assert error["details"]["questionsUsed"] == 50
        assert error["details"]["upgradeUrl"] == "/api/subscriptions/create-checkout-session"

    def test_history(self, client, make_user, auth_for):
        user = make_user(used=3, limit=50, period=_current_period())

        response = client.get("/api/usage/history", params={"months": 3}, headers=auth_for(user))

        assert response.status_code == 200
        assert response.json()["history"][0]["questionsUsed"] == 3

    def test_history_months_bounded(self, client, make_user, auth_for):
        user = make_user()

        response = client.get("/api/usage/history", params={"months": 0}, headers=auth_for(user))

        assert response.status_code == 400


# ===========================================================================
# Subscriptions and webhooks
# ===========================================================================

class TestSubscriptionRoutes:

    def test_status(self, client, make_user, auth_for):
        user = make_user()

        response = client.get("/api/subscriptions/status", headers=auth_for(user))

        assert response.status_code == 200
        assert response.json()["subscription"]["planType"] == "free"

    def test_cancel_without_paid_plan(self, client, make_user, auth_for):
        user = make_user()

        response = client.post("/api/subscriptions/cancel", headers=auth_for(user))

        assert response.status_code == 404
        assert _error(response)["code"] == "SUBSCRIPTION_NOT_FOUND"

    def test_checkout(self, client, container, make_user, auth_for, mocker):
        user = make_user()
        mocker.patch.object(container.billing_gateway, "create_customer", AsyncMock(return_value={"id": "cus_1"}))
        mocker.patch.object(
            container.billing_gateway,
            "create_checkout_session",
            AsyncMock(return_value={"id": "cs_1", "url": "https://checkout.test/cs_1"}),
        )

        response = client.post(
            "/api/subscriptions/create-checkout-session",
            json={"successUrl": "https://app.test/ok", "cancelUrl": "https://app.test/cancel"},
            headers=auth_for(user),
        )

        assert response.status_code == 200
        assert response.json() == {"sessionId": "cs_1", "url": "https://checkout.test/cs_1"}


class TestWebhookRoutes:

    def test_bad_signature_rejected(self, client):
        payload = billing_event("customer.subscription.deleted", {"id": "sub_1"})

        response = client.post(
            "/api/webhooks/billing",
            content=payload,
            headers={"stripe-signature": sign_payload(payload, secret="whsec_wrong")},
        )

        assert response.status_code == 400
        assert _error(response)["code"] == "WEBHOOK_SIGNATURE_INVALID"

    def test_signed_unknown_event_acknowledged(self, client):
        payload = billing_event("customer.created", {"id": "cus_1"})

        response = client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": sign_payload(payload)},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}


# ===========================================================================
# Chat
# ===========================================================================

class TestChatRoutes:

    CHAT_BODY = {"messages": [{"role": "user", "content": "Hello"}]}

    def test_anonymous_chat_is_unmetered(self, client, container, mocker):
        mocker.patch.object(container.chat_proxy, "complete", AsyncMock(return_value=UpstreamResponse(200, COMPLETION)))

        response = client.post("/api/chat", json=self.CHAT_BODY)

        assert response.status_code == 200
        assert response.json() == COMPLETION
        assert "X-Usage-Questions-Used" not in response.headers

    def test_authenticated_chat_is_metered(self, client, container, make_user, auth_for, mocker):
        user = make_user()
        mocker.patch.object(container.chat_proxy, "complete", AsyncMock(return_value=UpstreamResponse(200, COMPLETION)))

        response = client.post("/api/chat", json=self.CHAT_BODY, headers=auth_for(user))

        assert response.status_code == 200
        assert response.headers["X-Usage-Questions-Used"] == "1"
        assert response.headers["X-Usage-Questions-Limit"] == "50"

    def test_chat_at_limit_never_reaches_upstream(self, client, container, make_user, auth_for, mocker):
        user = make_user(used=50, limit=50, period=_current_period())
        complete = mocker.patch.object(container.chat_proxy, "complete", AsyncMock())

        response = client.post("/api/chat", json=self.CHAT_BODY, headers=auth_for(user))

        assert response.status_code == 403
        assert _error(response)["code"] == "USAGE_LIMIT_EXCEEDED"
        complete.assert_not_awaited()

    def test_upstream_failure_still_charged(self, client, container, make_user, auth_for, mocker):
        user = make_user()
        mocker.patch.object(
            container.chat_proxy,
            "complete",
            AsyncMock(return_value=UpstreamResponse(500, {"error": {"message": "model overloaded"}})),
        )

        response = client.post("/api/chat", json=self.CHAT_BODY, headers=auth_for(user))

        assert response.status_code == 500
        assert _error(response)["code"] == "UPSTREAM_ERROR"
        assert response.headers["X-Usage-Questions-Used"] == "1"
        assert container.meter.get_status(user.id).questions_used == 1

    def test_stream_rejected(self, client):
        response = client.post("/api/chat", json={**self.CHAT_BODY, "stream": True})

        assert response.status_code == 400
        assert _error(response)["code"] == "VALIDATION_ERROR"

    def test_anonymous_refused_when_disabled(self, app_client):
        client = app_client(anonymous_chat_enabled=False)

        response = client.post("/api/chat", json=self.CHAT_BODY)

        assert response.status_code == 401
        assert _error(response)["code"] == "UNAUTHORIZED"

    def test_upstream_not_configured(self, app_client):
        client = app_client(upstream_api_key=None)

        response = client.post("/api/chat", json=self.CHAT_BODY)

        assert response.status_code == 503
        assert _error(response)["code"] == "UPSTREAM_NOT_CONFIGURED"

    def test_upstream_not_configured_charges_nothing(self, app_client, make_user):
        client = app_client(upstream_api_key=None)
        container = client.app.state.container
        user = make_user()
        headers = {"Authorization": f"Bearer {container.sessions.issue(user.id)}"}

        response = client.post("/api/chat", json=self.CHAT_BODY, headers=headers)

        assert response.status_code == 503
        assert "X-Usage-Questions-Used" not in response.headers
        assert container.meter.get_status(user.id).questions_used == 0


# ===========================================================================
# Internal triggers
# ===========================================================================

class TestInternalRoutes:

    def test_key_required(self, client):
        response = client.post("/api/internal/housekeeping")

        assert response.status_code == 403
        assert _error(response)["code"] == "FORBIDDEN"

    def test_housekeeping(self, client, make_user):
        make_user()

        response = client.post("/api/internal/housekeeping", headers={"X-Internal-Key": INTERNAL_KEY})

        assert response.status_code == 200
        body = response.json()
        assert body["period"] == _current_period()
        assert body["created"] == 1
        assert body["expired"] == 0

    def test_reset_rejects_bad_period(self, client):
        response = client.post(
            "/api/internal/usage/reset",
            json={"period": "2026-13"},
            headers={"X-Internal-Key": INTERNAL_KEY},
        )

        assert response.status_code == 400

    def test_reset_unknown_user(self, client):
        response = client.post(
            "/api/internal/usage/reset/no-such-user/2026-10",
            headers={"X-Internal-Key": INTERNAL_KEY},
        )

        assert response.status_code == 404
        assert _error(response)["code"] == "USER_NOT_FOUND"

    def test_reset_one_user(self, client, make_user):
        user = make_user(used=50, limit=50, period="2026-09")

        response = client.post(
            f"/api/internal/usage/reset/{user.id}/2026-09",
            headers={"X-Internal-Key": INTERNAL_KEY},
        )

        assert response.status_code == 200
        assert response.json()["success"] is True


# ===========================================================================
# Admission: origin allow-list and rate limits
# ===========================================================================

class TestAdmission:

    def test_disallowed_origin(self, app_client):
        client = app_client(allowed_origins=["chrome-extension://*"])

        response = client.get("/api/usage/status", headers={"Origin": "https://evil.example"})

        assert response.status_code == 403
        assert _error(response)["code"] == "ORIGIN_NOT_ALLOWED"

    def test_allowed_origin_passes_to_route(self, app_client):
        client = app_client(allowed_origins=["chrome-extension://*"])

        response = client.get(
            "/api/usage/status",
            headers={"Origin": "chrome-extension://abcdefghijklmnopabcdefghijklmnop"},
        )

        assert response.status_code == 401

    def test_auth_endpoints_rate_limited_per_ip(self, app_client):
        client = app_client(rate_limit_auth_ip_max=2)

        statuses = [client.post("/api/auth/refresh", json={"refreshToken": "x"}).status_code for _ in range(3)]

        assert statuses[:2] == [401, 401]
        assert statuses[2] == 429

    def test_forwarded_for_from_untrusted_peer_is_ignored(self, app_client):
        client = app_client(rate_limit_auth_ip_max=2)

        statuses = [
            client.post(
                "/api/auth/refresh",
                json={"refreshToken": "x"},
                headers={"X-Forwarded-For": f"10.0.0.{i}"},
            ).status_code
            for i in range(5)
        ]

        assert statuses[:2] == [401, 401]
        assert set(statuses[2:]) == {429}

    def test_forwarded_for_from_trusted_proxy_keys_the_window(self, app_client):
        client = app_client(rate_limit_auth_ip_max=1, trusted_proxies=["testclient"])

        first = client.post("/api/auth/refresh", json={"refreshToken": "x"}, headers={"X-Forwarded-For": "10.0.0.1"})
        other = client.post("/api/auth/refresh", json={"refreshToken": "x"}, headers={"X-Forwarded-For": "10.0.0.2"})
        repeat = client.post("/api/auth/refresh", json={"refreshToken": "x"}, headers={"X-Forwarded-For": "10.0.0.1"})

        assert (first.status_code, other.status_code, repeat.status_code) == (401, 401, 429)

    def test_rate_limit_response_carries_retry_after(self, app_client):
        client = app_client(rate_limit_ip_max=1)
        client.get("/api/usage/status")

        response = client.get("/api/usage/status")

        assert response.status_code == 429
        assert _error(response)["code"] == "RATE_LIMITED"
        assert int(response.headers["Retry-After"]) >= 1

    def test_webhooks_exempt_from_rate_limit(self, app_client):
        client = app_client(rate_limit_ip_max=1)
        payload = billing_event("customer.created", {"id": "cus_1"})

        for _ in range(3):
            response = client.post(
                "/api/webhooks/billing",
                content=payload,
                headers={"stripe-signature": sign_payload(payload)},
            )
            assert response.status_code == 200
