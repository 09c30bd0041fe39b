"""
Usage Meter: per-user monthly question quota
============================================

PURPOSE:
    Meters question consumption against the monthly limit of the user's
    governing plan.

STATE MACHINE (per user, per period):
    absent ──first use / plan change / monthly reset──► open(used=0, limit=L)
    open(used < limit) ──record_usage──► open(used + 1)
    open(used == limit) ──record_usage──► UsageLimitExceeded (no change)
    open ──plan change──► open(used unchanged, limit = L')
    open ──admin reset──► open(used = 0)

ATOMICITY:
    The admission check is one conditional UPDATE:

        UPDATE usage_records SET questions_used = questions_used + 1
        WHERE user_id = ? AND period_key = ? AND questions_used < questions_limit

    Zero matched rows means the quota is exhausted. Concurrent requests for
    the same user at ``limit - 1`` admit exactly one. Record creation uses
    INSERT ... ON CONFLICT DO NOTHING so concurrent first uses cannot
    produce two rows for the same period.

POLICY:
    Usage is charged on attempt. A downstream failure after admission does
    not refund the increment.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from app.auth.identity import Anonymous, Authenticated, Identity
from app.config import Settings
from app.core.async_utils import run_sync
from app.core.database import insert_if_absent, sqlite_retry
from app.core.errors import AuthenticationRequired, UsageLimitExceeded, UsageTrackingFailed
from app.models import GOVERNING_STATUSES, PlanType, Subscription, SubscriptionStatus, UsageRecord

logger = logging.getLogger(__name__)

__all__ = [
    "UsageMeter",
    "UsageSnapshot",
    "UsageStatus",
    "next_period_start",
    "period_key",
]

usage_table = UsageRecord.__table__
subscriptions_table = Subscription.__table__


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def period_key(now: datetime) -> str:
    """Calendar-month key in UTC, e.g. ``2026-10``."""
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return f"{now.year:04d}-{now.month:02d}"


def next_period_start(now: datetime) -> datetime:
    """First instant of the following UTC month."""
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def new_usage_row(user_id: str, period: str, limit: int, now: datetime) -> dict:
    """Column values for a fresh usage record (Core inserts bypass model defaults)."""
    return {
        "id": str(uuid4()),
        "user_id": user_id,
        "period_key": period,
        "questions_used": 0,
        "questions_limit": limit,
        "last_reset_at": now,
        "created_at": now,
        "updated_at": now,
    }


@dataclass(frozen=True)
class UsageSnapshot:
    questions_used: int
    questions_limit: int

    @property
    def can_ask_more(self) -> bool:
        return self.questions_used < self.questions_limit

    def to_dict(self) -> dict:
        return {
            "questionsUsed": self.questions_used,
            "questionsLimit": self.questions_limit,
            "canAskMore": self.can_ask_more,
        }


@dataclass(frozen=True)
class UsageStatus:
    questions_used: int
    questions_limit: int
    plan_type: str
    next_reset: datetime

    def to_dict(self) -> dict:
        return {
            "questionsUsed": self.questions_used,
            "questionsLimit": self.questions_limit,
            "questionsRemaining": max(0, self.questions_limit - self.questions_used),
            "planType": self.plan_type,
            "nextReset": self.next_reset.isoformat(),
        }


class UsageMeter:
    """Quota accounting against the usage_records table."""

    def __init__(
        self,
        settings: Settings,
        engine: Engine,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._settings = settings
        self._engine = engine
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Plan → limit
    # ------------------------------------------------------------------

    def current_period(self, now: Optional[datetime] = None) -> str:
        return period_key(now or self._clock())

    def limit_for(self, plan_type: str, status: str) -> int:
        if plan_type != PlanType.PREMIUM.value:
            return self._settings.free_questions_limit
        if status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value):
            return self._settings.premium_questions_limit
        if status == SubscriptionStatus.PAST_DUE.value and not self._settings.past_due_demotes_limit:
            return self._settings.premium_questions_limit
        return self._settings.free_questions_limit

    def _governing_plan(self, conn: Connection, user_id: str) -> tuple[str, int]:
        row = conn.execute(
            select(subscriptions_table.c.plan_type, subscriptions_table.c.status)
            .where(subscriptions_table.c.user_id == user_id)
            .where(subscriptions_table.c.status.in_(GOVERNING_STATUSES))
        ).first()
        if row is None:
            return PlanType.FREE.value, self._settings.free_questions_limit
        return row.plan_type, self.limit_for(row.plan_type, row.status)

    # ------------------------------------------------------------------
    # Admission check
    # ------------------------------------------------------------------

    def record_usage(self, user_id: str) -> UsageSnapshot:
        """Atomically admit one question for *user_id* in the current period.

        Raises:
            UsageLimitExceeded: quota for the period is exhausted; nothing changes.
        """
        now = self._clock()
        period = period_key(now)

        def _txn():
            with self._engine.begin() as conn:
                _, limit = self._governing_plan(conn, user_id)
                insert_if_absent(conn, usage_table, new_usage_row(user_id, period, limit, now))
                result = conn.execute(
                    update(usage_table)
                    .where(usage_table.c.user_id == user_id)
                    .where(usage_table.c.period_key == period)
                    .where(usage_table.c.questions_used < usage_table.c.questions_limit)
                    .values(questions_used=usage_table.c.questions_used + 1, updated_at=now)
                )
                row = conn.execute(
                    select(usage_table.c.questions_used, usage_table.c.questions_limit)
                    .where(usage_table.c.user_id == user_id)
                    .where(usage_table.c.period_key == period)
                ).one()
                return result.rowcount == 1, row.questions_used, row.questions_limit

        admitted, used, limit = sqlite_retry(_txn)
        if not admitted:
            logger.info(
                "usage_limit_reached",
                extra={"user.id": user_id, "usage.period": period, "usage.used": used, "usage.limit": limit},
            )
            raise UsageLimitExceeded(used, limit, self._settings.upgrade_path)
        return UsageSnapshot(questions_used=used, questions_limit=limit)

    async def admit(self, identity: Identity) -> Optional[UsageSnapshot]:
        """Gate a metered request for *identity*.

        Anonymous callers are not metered; they are refused outright when
        anonymous access is disabled. Storage failures fail closed unless
        ``usage_fail_open`` is configured.
        """
        if isinstance(identity, Anonymous):
            if not self._settings.anonymous_chat_enabled:
                raise AuthenticationRequired("anonymous access disabled")
            return None

        assert isinstance(identity, Authenticated)
        try:
            return await run_sync(self.record_usage, identity.user_id, timeout=10)
        except UsageLimitExceeded:
            raise
        except (SQLAlchemyError, TimeoutError) as exc:
            if self._settings.usage_fail_open:
                logger.error(
                    "usage_tracking_failed_open",
                    extra={"user.id": identity.user_id, "error.message": str(exc)},
                )
                return None
            raise UsageTrackingFailed(str(exc), context={"user.id": identity.user_id}) from exc

    # ------------------------------------------------------------------
    # Limit maintenance
    # ------------------------------------------------------------------

    def refresh_limit(self, user_id: str) -> int:
        """Recompute the current-period limit from the user's governing plan.

        Creates the period record if absent. Consumed count is preserved.
        Returns the resulting limit.
        """
        now = self._clock()
        period = period_key(now)

        def _txn():
            with self._engine.begin() as conn:
                _, limit = self._governing_plan(conn, user_id)
                self._apply_limit(conn, user_id, period, limit, now)
                return limit

        limit = sqlite_retry(_txn)
        logger.info(
            "usage_limit_refreshed",
            extra={"user.id": user_id, "usage.period": period, "usage.limit": limit},
        )
        return limit

    def apply_plan_limit(self, user_id: str, plan_type: str, status: str = SubscriptionStatus.ACTIVE.value) -> int:
        """Set the current-period limit for an explicit plan, preserving consumed."""
        now = self._clock()
        limit = self.limit_for(plan_type, status)

        def _txn():
            with self._engine.begin() as conn:
                self._apply_limit(conn, user_id, period_key(now), limit, now)

        sqlite_retry(_txn)
        return limit

    @staticmethod
    def _apply_limit(conn: Connection, user_id: str, period: str, limit: int, now: datetime) -> None:
        insert_if_absent(conn, usage_table, new_usage_row(user_id, period, limit, now))
        conn.execute(
            update(usage_table)
            .where(usage_table.c.user_id == user_id)
            .where(usage_table.c.period_key == period)
            .values(questions_limit=limit, updated_at=now)
        )

    def reset_all_usage(self, period: Optional[str] = None) -> int:
        """Open a fresh record for every user with a governing subscription.

        Existing records for *period* are never touched, so re-running is a
        no-op. Returns the number of records created.
        """
        now = self._clock()
        period = period or period_key(now)

        def _txn():
            created = 0
            with self._engine.begin() as conn:
                rows = conn.execute(
                    select(
                        subscriptions_table.c.user_id,
                        subscriptions_table.c.plan_type,
                        subscriptions_table.c.status,
                    ).where(subscriptions_table.c.status.in_(GOVERNING_STATUSES))
                ).all()
                for row in rows:
                    limit = self.limit_for(row.plan_type, row.status)
                    created += insert_if_absent(conn, usage_table, new_usage_row(row.user_id, period, limit, now))
            return created

        created = sqlite_retry(_txn)
        logger.info("monthly_usage_reset", extra={"usage.period": period, "usage.created": created})
        return created

    def reset_user_usage(self, user_id: str, period: str) -> bool:
        """Admin reset: consumed back to zero for one user and period.

        Returns False when the user has no record for that period.
        """
        now = self._clock()
        with self._engine.begin() as conn:
            result = conn.execute(
                update(usage_table)
                .where(usage_table.c.user_id == user_id)
                .where(usage_table.c.period_key == period)
                .values(questions_used=0, last_reset_at=now, updated_at=now)
            )
        reset = result.rowcount == 1
        logger.info("user_usage_reset", extra={"user.id": user_id, "usage.period": period, "usage.reset": reset})
        return reset

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_status(self, user_id: str) -> UsageStatus:
        now = self._clock()
        period = period_key(now)
        with self._engine.connect() as conn:
            plan_type, limit = self._governing_plan(conn, user_id)
            row = conn.execute(
                select(usage_table.c.questions_used, usage_table.c.questions_limit)
                .where(usage_table.c.user_id == user_id)
                .where(usage_table.c.period_key == period)
            ).first()
        used = row.questions_used if row else 0
        if row is not None:
            limit = row.questions_limit
        return UsageStatus(
            questions_used=used,
            questions_limit=limit,
            plan_type=plan_type,
            next_reset=next_period_start(now),
        )

    def get_history(self, user_id: str, months: int = 6) -> List[dict]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                select(
                    usage_table.c.period_key,
                    usage_table.c.questions_used,
                    usage_table.c.questions_limit,
                    usage_table.c.last_reset_at,
                )
                .where(usage_table.c.user_id == user_id)
                .order_by(usage_table.c.period_key.desc())
                .limit(months)
            ).all()
        return [
            {
                "monthYear": r.period_key,
                "questionsUsed": r.questions_used,
                "questionsLimit": r.questions_limit,
                "lastResetDate": r.last_reset_at.isoformat() if r.last_reset_at else None,
            }
            for r in rows
        ]
