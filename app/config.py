"""
QuotaGate Application Configuration
===================================

PURPOSE:
    Pydantic-Settings based configuration for the QuotaGate gateway.
    All settings can be overridden via environment variables (QUOTAGATE_ prefix).

    A single Settings instance is constructed at process start and passed by
    reference into every service constructor. Services never read the
    environment mid-operation.
"""

import logging
import secrets
from typing import List, Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

_SEVEN_DAYS_S = 7 * 24 * 3600
_THIRTY_DAYS_S = 30 * 24 * 3600


class Settings(BaseSettings):
    """Gateway settings: identity, sessions, quotas, billing, upstream."""

    app_name: str = "QuotaGate"
    debug: bool = False  # Exposes internal error detail in error bodies
    data_directory: str = "data"
    log_dir: str = "logs"

    # Session credentials (HS256 JWT)
    session_secret: Optional[str] = None
    session_algorithm: str = "HS256"
    session_ttl_seconds: int = _SEVEN_DAYS_S
    refresh_ttl_seconds: int = _THIRTY_DAYS_S

    # Monthly question quotas
    free_questions_limit: int = 50
    premium_questions_limit: int = 100

    # Identity provider (Google OAuth access-token introspection)
    google_tokeninfo_url: str = "https://oauth2.googleapis.com/tokeninfo"
    google_client_id: Optional[str] = None  # When set, token audience must match
    identity_timeout_s: float = 5.0

    # Stripe billing
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_price_id: Optional[str] = None
    stripe_webhook_tolerance_s: int = 300
    billing_timeout_s: float = 10.0
    upgrade_path: str = "/api/subscriptions/create-checkout-session"

    # Grace policy: keep premium limit while past_due unless this is set
    past_due_demotes_limit: bool = False

    # Metered upstream (OpenAI-compatible chat completions)
    upstream_chat_url: str = "https://api.openai.com/v1/chat/completions"
    upstream_api_key: Optional[str] = None
    upstream_default_model: str = "gpt-4o-mini"
    upstream_timeout_s: float = 60.0

    anonymous_chat_enabled: bool = True
    usage_fail_open: bool = False  # Storage failure during admission: reject unless set

    # Admission control
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:5173"]
    allowed_origins: List[str] = []  # Empty = any; trailing '*' is a prefix match
    trusted_proxies: List[str] = ["127.0.0.1", "::1"]  # Peers whose X-Forwarded-For is honoured
    rate_limit_window_s: int = 60
    rate_limit_ip_max: int = 120
    rate_limit_auth_ip_max: int = 10
    rate_limit_identity_max: int = 60

    # Scheduler / admin triggers
    internal_api_key: Optional[str] = None
    housekeeping_enabled: bool = False
    housekeeping_interval_s: int = 3600

    class Config:
        env_file = ".env"
        env_prefix = "QUOTAGATE_"

    def get_session_secret(self) -> str:
        """Return the session signing secret, auto-generating if not set.

        Auto-generated secrets are ephemeral: every issued session is invalid
        after a restart. Set QUOTAGATE_SESSION_SECRET in production.
        """
        if self.session_secret:
            return self.session_secret

        logger.warning(
            "SESSION_SECRET not set; auto-generating ephemeral signing key. "
            "All sessions will be invalidated on restart. "
            "Set QUOTAGATE_SESSION_SECRET in production."
        )
        self.session_secret = secrets.token_urlsafe(48)
        return self.session_secret


settings = Settings()
