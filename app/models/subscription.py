"""
Subscription Model
==================

Local mirror of the billing provider's subscription state.

A user's *governing* subscription is the single row whose status is in
GOVERNING_STATUSES; a partial unique index on ``user_id`` enforces at most
one such row per user. ``external_subscription_id`` is the natural key for
webhook matching and is unique when present.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import DateTime, Index, text
from sqlmodel import Field, SQLModel


class PlanType(str, Enum):
    FREE = "free"
    PREMIUM = "premium"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


GOVERNING_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.PAST_DUE.value,
)

_GOVERNING_WHERE = text("status IN ('active', 'trialing', 'past_due')")


class Subscription(SQLModel, table=True):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_governing_user",
            "user_id",
            unique=True,
            sqlite_where=_GOVERNING_WHERE,
            postgresql_where=_GOVERNING_WHERE,
        ),
    )

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        max_length=36,
    )
    user_id: str = Field(foreign_key="users.id", index=True, max_length=36)
    external_customer_id: Optional[str] = Field(default=None, index=True, max_length=255)
    external_subscription_id: Optional[str] = Field(default=None, unique=True, nullable=True, max_length=255)
    plan_type: str = Field(default=PlanType.FREE.value, max_length=16)
    status: str = Field(default=SubscriptionStatus.ACTIVE.value, max_length=16)
    current_period_start: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    current_period_end: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    cancel_at_period_end: bool = Field(default=False)
    trial_start: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    trial_end: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True))

    @property
    def is_governing(self) -> bool:
        return self.status in GOVERNING_STATUSES

    def public_dict(self) -> Dict[str, Any]:
        return {
            "planType": self.plan_type,
            "status": self.status,
            "currentPeriodStart": self.current_period_start.isoformat() if self.current_period_start else None,
            "currentPeriodEnd": self.current_period_end.isoformat() if self.current_period_end else None,
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "trialEnd": self.trial_end.isoformat() if self.trial_end else None,
        }
