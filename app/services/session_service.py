"""
Session Token Service
=====================

PURPOSE:
    Issues and verifies the gateway's own session credentials (HS256 JWT).

    Two token classes share the signing secret:
        access   ``typ=access``, short-lived (session_ttl_seconds)
        refresh  ``typ=refresh``, long-lived (refresh_ttl_seconds), only
                 accepted by the refresh exchange

    Signature and expiry are necessary but not sufficient: ``verify``
    re-reads the user row on every call, so a deactivated account is
    rejected before its tokens expire.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

import jwt
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.auth.identity import Anonymous, Authenticated, Identity
from app.config import Settings
from app.core.database import get_session_context
from app.core.errors import AccountInactive, QuotaGateError, SessionExpired, SessionInvalid
from app.models import User

logger = logging.getLogger(__name__)


class TokenClass(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class SessionTokenService:
    def __init__(
        self,
        settings: Settings,
        engine: Engine,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._settings = settings
        self._engine = engine
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _ttl(self, token_class: TokenClass) -> int:
        if token_class is TokenClass.REFRESH:
            return self._settings.refresh_ttl_seconds
        return self._settings.session_ttl_seconds

    def issue(self, user_id: str, token_class: TokenClass = TokenClass.ACCESS) -> str:
        now = self._clock()
        payload = {
            "sub": user_id,
            "typ": token_class.value,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self._ttl(token_class))).timestamp()),
        }
        return jwt.encode(
            payload,
            self._settings.get_session_secret(),
            algorithm=self._settings.session_algorithm,
        )

    def decode(self, token: str, token_class: TokenClass = TokenClass.ACCESS) -> Dict[str, Any]:
        """Check signature, expiry and token class. No database access."""
        if not token:
            raise SessionInvalid("empty token")
        try:
            claims = jwt.decode(
                token,
                self._settings.get_session_secret(),
                algorithms=[self._settings.session_algorithm],
                options={"require": ["sub", "exp", "iat"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise SessionExpired("session token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise SessionInvalid(f"session token rejected: {exc}") from exc

        if claims.get("typ") != token_class.value:
            raise SessionInvalid(f"expected {token_class.value} token, got {claims.get('typ')!r}")
        return claims

    def verify(self, token: str, token_class: TokenClass = TokenClass.ACCESS) -> User:
        """Decode *token* and return the live, active user it names."""
        claims = self.decode(token, token_class)
        user_id = claims["sub"]
        with get_session_context(self._engine) as session:
            user = session.get(User, user_id)
        if user is None:
            raise SessionInvalid("session user no longer exists", context={"user.id": user_id})
        if not user.is_active:
            raise AccountInactive(context={"user.id": user_id})
        return user

    def verify_optional(self, token: Optional[str]) -> Identity:
        """Optional mode: never raises a session error, degrades to Anonymous."""
        if not token:
            return Anonymous()
        try:
            return Authenticated(self.verify(token))
        except QuotaGateError as exc:
            logger.debug("optional_auth_degraded", extra={"auth.reason": type(exc).__name__})
            return Anonymous(reason=type(exc).__name__)
        except SQLAlchemyError:
            logger.warning("optional_auth_storage_unavailable", exc_info=True)
            return Anonymous(reason="StorageUnavailable")

    def refresh(self, refresh_token: str) -> str:
        """Exchange a valid refresh token for a new access token."""
        user = self.verify(refresh_token, TokenClass.REFRESH)
        return self.issue(user.id, TokenClass.ACCESS)
