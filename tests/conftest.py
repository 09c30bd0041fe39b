"""
Pytest configuration for QuotaGate tests.
Points the database and log directory at a temp dir before any app import.
"""

import os
import tempfile

# Must be set before any app import: app.config and app.core.database read them at import time
_test_data_dir = tempfile.mkdtemp(prefix="quotagate_test_")
os.environ.setdefault("QUOTAGATE_DATA_DIRECTORY", _test_data_dir)
os.environ.setdefault("QUOTAGATE_LOG_DIR", os.path.join(_test_data_dir, "logs"))
os.environ.setdefault("QUOTAGATE_SESSION_SECRET", "test-session-secret-not-for-production-use")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_test_data_dir}/test.db")

import pytest
from sqlalchemy import delete
from sqlmodel import SQLModel

from app.core.database import get_engine, get_session_context

# Import all models so their tables are registered on SQLModel.metadata
from app.models import PlanType, Subscription, SubscriptionStatus, UsageRecord, User

SQLModel.metadata.create_all(get_engine())

# Load error registry so QuotaGateError returns correct HTTP status codes
from app.core.errors.registry import error_registry
error_registry.load()

from helpers import FIXED_NOW, make_settings


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def engine():
    return get_engine()


@pytest.fixture(autouse=True)
def _clean_tables():
    """Every test starts from empty tables."""
    yield
    with get_engine().begin() as conn:
        conn.execute(delete(UsageRecord.__table__))
        conn.execute(delete(Subscription.__table__))
        conn.execute(delete(User.__table__))


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def make_user(engine):
    """Create a signed-up user: User + governing Subscription + optional usage row."""

    def _make(
        email: str = "a@x.com",
        subject: str | None = "S1",
        plan_type: str = PlanType.FREE.value,
        status: str = SubscriptionStatus.ACTIVE.value,
        used: int | None = None,
        limit: int = 50,
        period: str = "2026-10",
        **subscription_fields,
    ) -> User:
        with get_session_context(engine) as session:
            user = User(email=email, provider_subject_id=subject, display_name="Test User")
            session.add(user)
            session.flush()
            session.add(
                Subscription(
                    user_id=user.id,
                    plan_type=plan_type,
                    status=status,
                    **subscription_fields,
                )
            )
            if used is not None:
                session.add(
                    UsageRecord(
                        user_id=user.id,
                        period_key=period,
                        questions_used=used,
                        questions_limit=limit,
                    )
                )
            session.commit()
            session.refresh(user)
            return user

    return _make
