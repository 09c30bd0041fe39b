from app.models.subscription import (
    GOVERNING_STATUSES,
    PlanType,
    Subscription,
    SubscriptionStatus,
)
from app.models.usage import UsageRecord
from app.models.user import User

__all__ = [
    "GOVERNING_STATUSES",
    "PlanType",
    "Subscription",
    "SubscriptionStatus",
    "UsageRecord",
    "User",
]
