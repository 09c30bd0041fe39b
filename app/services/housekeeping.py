"""
Housekeeping: monthly usage rollover and lapsed-subscription expiry.

Triggered either by an external scheduler through the internal router, or
by the in-process loop when QUOTAGATE_HOUSEKEEPING_ENABLED is set. Both
steps are idempotent, so running them more often than needed is harmless.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from app.core.async_utils import run_sync
from app.services.container import ServiceContainer

logger = logging.getLogger(__name__)


def run_housekeeping(container: ServiceContainer, now: Optional[datetime] = None) -> Dict[str, object]:
    now = now or datetime.now(timezone.utc)
    expired = container.subscriptions.expire_lapsed(now)
    period = container.meter.current_period(now)
    created = container.meter.reset_all_usage(period)
    result = {"period": period, "created": created, "expired": expired}
    logger.info("housekeeping_completed", extra={f"housekeeping.{k}": v for k, v in result.items()})
    return result


async def housekeeping_loop(container: ServiceContainer) -> None:
    interval = container.settings.housekeeping_interval_s
    while True:
        try:
            await run_sync(run_housekeeping, container, timeout=300)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("housekeeping_failed")
        await asyncio.sleep(interval)
