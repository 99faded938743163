"""
Usage Counters

Daily per-account and per-unit-kind usage for dashboards.
Best effort: a failed increment is logged and dropped, so counts may
occasionally undercount. Billing never reads these.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from redis.exceptions import RedisError

from .errors import SharedStoreUnavailable

logger = logging.getLogger(__name__)

USAGE_TTL_SECONDS = 8 * 86400


class UsageCounter:
    def __init__(self, store, key_prefix: str = "usage"):
        self.store = store
        self.key_prefix = key_prefix

    def _day(self) -> str:
        return datetime.now(timezone.utc).strftime("%Y%m%d")

    async def record(self, account_id: str, unit_kind: str, quantity: int = 1) -> Optional[int]:
        """Returns the account's unit count for today, or None if the write was lost."""
        day = self._day()
        try:
            count, _ = await self.store.increment_with_expiry(
                f"{self.key_prefix}:{day}:account:{account_id}", USAGE_TTL_SECONDS, quantity
            )
            await self.store.increment_with_expiry(
                f"{self.key_prefix}:{day}:unit:{unit_kind}", USAGE_TTL_SECONDS, quantity
            )
            return count
        except (SharedStoreUnavailable, RedisError, asyncio.TimeoutError) as e:
            logger.warning(f"Usage counter write dropped for {unit_kind}: {e}")
            return None
