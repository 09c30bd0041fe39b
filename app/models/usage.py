"""
Usage Record Model
==================

Per-user, per-calendar-month (UTC) question counter.

At most one row per (user_id, period_key). ``questions_used`` only ever
grows within a period, except through an explicit admin reset.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import CheckConstraint, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


class UsageRecord(SQLModel, table=True):
    __tablename__ = "usage_records"
    __table_args__ = (
        UniqueConstraint("user_id", "period_key", name="uq_usage_records_user_period"),
        CheckConstraint("questions_used >= 0", name="ck_usage_records_used_nonnegative"),
    )

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        max_length=36,
    )
    user_id: str = Field(foreign_key="users.id", index=True, max_length=36)
    period_key: str = Field(max_length=7)  # YYYY-MM
    questions_used: int = Field(default=0)
    questions_limit: int = Field(default=0)
    last_reset_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True))
