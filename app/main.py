"""
QuotaGate API
=============

Subscription-gated gateway: identity binding, session tokens, monthly
question quotas, Stripe billing webhooks, and the metered chat proxy.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.engine import Engine

from app.config import Settings, settings as default_settings
from app.core.admission import AdmissionMiddleware
from app.core.database import close_db, get_engine, init_db
from app.core.errors import QuotaGateError
from app.core.errors.middleware import (
    quotagate_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from app.core.errors.registry import error_registry
from app.core.log_middleware import CorrelationMiddleware
from app.core.structured_logging import APP_VERSION, setup_logging
from app.routers import auth, chat, health, internal, subscriptions, usage, webhooks
from app.services.container import ServiceContainer
from app.services.housekeeping import housekeeping_loop

logger = logging.getLogger(__name__)

API_TITLE = "QuotaGate API"

TAGS_METADATA = [
    {"name": "health", "description": "Liveness and readiness. No authentication."},
    {"name": "auth", "description": "Sign-in with an identity-provider token, session refresh, profile."},
    {"name": "usage", "description": "Monthly question quota. **Requires session token.**"},
    {"name": "subscriptions", "description": "Checkout, cancellation and plan status. **Requires session token.**"},
    {"name": "webhooks", "description": "Billing provider events. Authenticated by signature."},
    {"name": "chat", "description": "Metered chat completion proxy. Session token optional."},
    {"name": "internal", "description": "Scheduler/admin triggers. **Requires X-Internal-Key.**"},
]


def create_app(app_settings: Optional[Settings] = None, engine: Optional[Engine] = None) -> FastAPI:
    """Build the application.

    Tests pass their own Settings and engine; production uses the process
    settings and the DATABASE_URL engine, migrated to head at startup.
    """
    app_settings = app_settings or default_settings
    run_migrations = engine is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting %s v%s", API_TITLE, APP_VERSION)
        error_registry.load()
        if run_migrations:
            init_db()

        container = ServiceContainer.build(app_settings, engine or get_engine())
        app.state.container = container

        housekeeping_task = None
        if app_settings.housekeeping_enabled:
            housekeeping_task = asyncio.create_task(housekeeping_loop(container))
            logger.info("Housekeeping loop started (every %ss)", app_settings.housekeeping_interval_s)

        yield

        if housekeeping_task is not None:
            housekeeping_task.cancel()
            try:
                await housekeeping_task
            except asyncio.CancelledError:
                pass
        await container.aclose()
        if run_migrations:
            close_db()
        logger.info("Shutdown complete")

    app = FastAPI(
        title=API_TITLE,
        version=APP_VERSION,
        openapi_tags=TAGS_METADATA,
        lifespan=lifespan,
    )
    app.state.settings = app_settings

    # Last added runs first: CORS → correlation ids → admission
    app.add_middleware(AdmissionMiddleware)
    app.add_middleware(CorrelationMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_origin_regex=r"^chrome-extension://[a-z]{32}$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["x-request-id", "x-correlation-id", "X-Usage-Questions-Used", "X-Usage-Questions-Limit"],
    )

    app.add_exception_handler(QuotaGateError, quotagate_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
    app.include_router(usage.router, prefix="/api/usage", tags=["usage"])
    app.include_router(subscriptions.router, prefix="/api/subscriptions", tags=["subscriptions"])
    app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])
    app.include_router(chat.router, prefix="/api", tags=["chat"])
    app.include_router(internal.router, prefix="/api/internal", tags=["internal"])

    return app


setup_logging(log_dir=default_settings.log_dir)

app = create_app()
