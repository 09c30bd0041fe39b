"""
Identity Binding Service
========================

PURPOSE:
    Turns an external credential plus the identity the client *claims* into
    a local User, creating the account on first sign-in.

FLOW:
    1. Validate input (credential, claimed subject, claimed email).
    2. Introspect the credential with the identity provider.
    3. Cross-check: verified subject must equal the claimed subject, and a
       provider-verified email must equal the claimed email. A mismatch is
       logged as a security event and refused.
    4. Bind locally in ONE transaction:
         - lookup by provider subject, and by email
         - subject row wins when the two lookups disagree (email untouched)
         - email row bound to another subject → IdentityConflict
         - existing user: refresh profile + last-login, bind subject if unset
         - new user: User + free/active Subscription + UsageRecord together
       A unique violation from a concurrent first sign-in rolls back and the
       bind is re-run against the winning row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.config import Settings
from app.core.async_utils import run_sync
from app.core.auth_events import log_auth_attempt, log_suspicious_activity, log_user_event
from app.core.database import get_session_context, sqlite_retry
from app.core.errors import (
    AccountInactive,
    InternalError,
    IdentityConflict,
    IdentitySpoofSuspected,
    QuotaGateError,
    ValidationError,
)
from app.models import GOVERNING_STATUSES, PlanType, Subscription, SubscriptionStatus, UsageRecord, User
from app.services.identity_provider import GoogleIdentityProvider, VerifiedIdentity
from app.services.usage_service import period_key

logger = logging.getLogger(__name__)

_BIND_ATTEMPTS = 2


@dataclass(frozen=True)
class ClaimedIdentity:
    subject_id: str
    email: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class BindResult:
    user: User
    is_new_user: bool
    subscription: Optional[Subscription] = None


class IdentityService:
    def __init__(
        self,
        settings: Settings,
        engine: Engine,
        provider: GoogleIdentityProvider,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._settings = settings
        self._engine = engine
        self._provider = provider
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def bind_identity(
        self,
        external_credential: str,
        claimed: ClaimedIdentity,
        request: Optional[Request] = None,
    ) -> BindResult:
        if not external_credential:
            raise ValidationError("external credential is required")
        if not claimed.subject_id or not claimed.email:
            raise ValidationError("claimed identity requires subject id and email")

        try:
            verified = await self._provider.introspect(external_credential)
            self._cross_check(verified, claimed, request)
            result = await run_sync(self._bind_with_retry, verified, claimed)
            if not result.user.is_active:
                raise AccountInactive(context={"user.id": result.user.id})
        except QuotaGateError as exc:
            log_auth_attempt(request, success=False, email=claimed.email, reason=type(exc).__name__)
            raise

        log_auth_attempt(request, success=True, email=result.user.email, user_id=result.user.id)
        return result

    @staticmethod
    def _cross_check(verified: VerifiedIdentity, claimed: ClaimedIdentity, request: Optional[Request]) -> None:
        if verified.subject_id != claimed.subject_id:
            log_suspicious_activity(
                "identity_subject_mismatch",
                request,
                claimed_subject=claimed.subject_id,
                verified_subject=verified.subject_id,
            )
            raise IdentitySpoofSuspected("verified subject differs from claimed subject")

        if verified.email and verified.email.lower() != claimed.email.lower():
            log_suspicious_activity(
                "identity_email_mismatch",
                request,
                verified_subject=verified.subject_id,
            )
            raise IdentitySpoofSuspected("verified email differs from claimed email")

    # ------------------------------------------------------------------
    # Local bind (runs in a worker thread)
    # ------------------------------------------------------------------

    def _bind_with_retry(self, verified: VerifiedIdentity, claimed: ClaimedIdentity) -> BindResult:
        for attempt in range(_BIND_ATTEMPTS):
            try:
                return sqlite_retry(lambda: self._bind_once(verified, claimed))
            except IntegrityError as exc:
                # A concurrent first sign-in won; the re-run sees its row
                logger.info(
                    "identity_bind_race",
                    extra={"attempt": attempt + 1, "error.message": str(exc.orig)},
                )
        raise InternalError("identity bind did not converge")

    def _bind_once(self, verified: VerifiedIdentity, claimed: ClaimedIdentity) -> BindResult:
        now = self._clock()
        email = claimed.email.strip().lower()

        with get_session_context(self._engine) as session:
            by_subject = session.exec(
                select(User).where(User.provider_subject_id == verified.subject_id)
            ).first()
            by_email = session.exec(select(User).where(User.email == email)).first()

            if by_subject is not None:
                user = by_subject
                if by_email is not None and by_email.id != by_subject.id:
                    logger.error(
                        "identity_rows_diverged",
                        extra={
                            "user.id": by_subject.id,
                            "user.email_row_id": by_email.id,
                            "identity.subject": verified.subject_id,
                        },
                    )
            elif by_email is not None:
                if by_email.provider_subject_id and by_email.provider_subject_id != verified.subject_id:
                    raise IdentityConflict(
                        "email bound to a different provider subject",
                        context={"user.id": by_email.id},
                    )
                user = by_email
            else:
                user = None

            if user is None:
                result = self._create_user(session, verified, claimed, email, now)
            else:
                if user.provider_subject_id is None:
                    user.provider_subject_id = verified.subject_id
                    log_user_event("subject_bound", user.id)
                if claimed.display_name:
                    user.display_name = claimed.display_name
                if claimed.avatar_url:
                    user.avatar_url = claimed.avatar_url
                user.last_login_at = now
                user.updated_at = now
                session.add(user)
                session.commit()
                session.refresh(user)
                result = BindResult(user=user, is_new_user=False, subscription=self._governing(session, user.id))

        if result.is_new_user:
            log_user_event("user_created", result.user.id, email=result.user.email)
        else:
            log_user_event("user_signin", result.user.id)
        return result

    def _create_user(
        self,
        session: Session,
        verified: VerifiedIdentity,
        claimed: ClaimedIdentity,
        email: str,
        now: datetime,
    ) -> BindResult:
        user = User(
            email=email,
            display_name=claimed.display_name,
            provider_subject_id=verified.subject_id,
            avatar_url=claimed.avatar_url,
            created_at=now,
            updated_at=now,
            last_login_at=now,
        )
        subscription = Subscription(
            user_id=user.id,
            plan_type=PlanType.FREE.value,
            status=SubscriptionStatus.ACTIVE.value,
            created_at=now,
            updated_at=now,
        )
        usage = UsageRecord(
            user_id=user.id,
            period_key=period_key(now),
            questions_used=0,
            questions_limit=self._settings.free_questions_limit,
            last_reset_at=now,
            created_at=now,
            updated_at=now,
        )
        session.add(user)
        session.flush()
        session.add(subscription)
        session.add(usage)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise
        session.refresh(user)
        session.refresh(subscription)
        return BindResult(user=user, is_new_user=True, subscription=subscription)

    @staticmethod
    def _governing(session: Session, user_id: str) -> Optional[Subscription]:
        return session.exec(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .where(col(Subscription.status).in_(GOVERNING_STATUSES))
        ).first()
