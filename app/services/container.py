"""
Service container.

Built once in the application lifespan from the process Settings and the
database engine, then stored on ``app.state.container``. Every service
receives its configuration through its constructor here; nothing below
reads the environment on its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.engine import Engine

from app.config import Settings
from app.core.rate_limiter import RateLimiter
from app.services.billing_gateway import StripeBillingGateway
from app.services.chat_proxy import ChatProxy
from app.services.identity_provider import GoogleIdentityProvider
from app.services.identity_service import IdentityService
from app.services.session_service import SessionTokenService
from app.services.subscription_service import SubscriptionService
from app.services.usage_service import UsageMeter

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: Engine
    identity_provider: GoogleIdentityProvider
    identity: IdentityService
    sessions: SessionTokenService
    meter: UsageMeter
    billing_gateway: StripeBillingGateway
    subscriptions: SubscriptionService
    chat_proxy: ChatProxy
    rate_limiter: RateLimiter

    @classmethod
    def build(cls, settings: Settings, engine: Engine) -> "ServiceContainer":
        provider = GoogleIdentityProvider(settings)
        meter = UsageMeter(settings, engine)
        gateway = StripeBillingGateway(settings)
        container = cls(
            settings=settings,
            engine=engine,
            identity_provider=provider,
            identity=IdentityService(settings, engine, provider),
            sessions=SessionTokenService(settings, engine),
            meter=meter,
            billing_gateway=gateway,
            subscriptions=SubscriptionService(settings, engine, gateway, meter),
            chat_proxy=ChatProxy(settings),
            rate_limiter=RateLimiter(settings),
        )
        if not gateway.configured:
            logger.warning("Stripe not configured: checkout and cancellation will fail")
        return container

    async def aclose(self) -> None:
        await self.identity_provider.close()
        await self.chat_proxy.close()
