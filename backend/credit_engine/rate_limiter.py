"""
Rate Limiter

Two nested fixed windows (per-minute, per-day) per (category, identity),
counted in the shared store. When the shared store is unreachable the
counters fall back to the local store: limits then hold per instance
rather than globally, but requests are still limited.
"""

import logging
from typing import Dict, Optional

from .config import TIER_LIMITS, TIER_ORDER, RATE_WINDOWS, API_KEY_DEFAULT_LIMITS
from .errors import RateLimitExceeded
from .models import Account, RateLimitResult

logger = logging.getLogger(__name__)

API_KEY_TIER = "api-key"


class RateLimiter:
    def __init__(
        self,
        store,
        tier_limits: Optional[Dict[str, Dict[str, int]]] = None,
        windows: Optional[Dict[str, int]] = None,
        key_prefix: str = "ratelimit",
    ):
        self.store = store
        self.tier_limits = dict(tier_limits if tier_limits is not None else TIER_LIMITS)
        self.windows = dict(windows if windows is not None else RATE_WINDOWS)
        self.key_prefix = key_prefix

    def upgrade_hint(self, tier: str) -> Optional[str]:
        if tier not in TIER_ORDER:
            return None
        idx = TIER_ORDER.index(tier)
        if idx + 1 >= len(TIER_ORDER):
            return None
        next_tier = TIER_ORDER[idx + 1]
        limits = self.tier_limits.get(next_tier, {})
        return (
            f"Upgrade to {next_tier} for {limits.get('minute')} requests/minute "
            f"and {limits.get('day')} requests/day"
        )

    def limits_for(self, account: Optional[Account]) -> tuple:
        """(tier label, limits) for an account; API keys carry their own limits."""
        if account is not None and account.source == "api-key":
            return API_KEY_TIER, {
                "minute": account.rate_limit_per_minute or API_KEY_DEFAULT_LIMITS["minute"],
                "day": account.rate_limit_per_day or API_KEY_DEFAULT_LIMITS["day"],
            }

        tier = account.tier if account is not None and account.tier in self.tier_limits else "free"
        return tier, self.tier_limits[tier]

    async def check(
        self,
        identity: str,
        category: str = "generation",
        tier: str = "free",
        limits: Optional[Dict[str, int]] = None,
    ) -> RateLimitResult:
        if limits is None:
            if tier not in self.tier_limits:
                tier = "free"
            limits = self.tier_limits[tier]

        remaining = None
        for window in ("minute", "day"):
            limit = limits[window]
            key = f"{self.key_prefix}:{category}:{identity}:{window}"
            count, ttl = await self.store.increment_with_expiry(key, self.windows[window])

            if count > limit:
                logger.info(f"Rate limit hit for {identity[:10]}... ({tier}, {window}: {count}/{limit})")
                return RateLimitResult(
                    allowed=False,
                    tier=tier,
                    limit=limit,
                    remaining=0,
                    window=window,
                    retry_after_seconds=max(1, ttl),
                    upgrade_hint=self.upgrade_hint(tier),
                    degraded=getattr(self.store, "degraded", False),
                )

            left = limit - count
            remaining = left if remaining is None else min(remaining, left)

        return RateLimitResult(
            allowed=True,
            tier=tier,
            limit=limits["minute"],
            remaining=remaining or 0,
            degraded=getattr(self.store, "degraded", False),
        )

    async def enforce(self, identity: str, account: Optional[Account] = None,
                      category: str = "generation") -> RateLimitResult:
        """check() for an account, raising RateLimitExceeded when denied."""
        tier, limits = self.limits_for(account)
        result = await self.check(identity, category=category, tier=tier, limits=limits)
        if not result.allowed:
            raise RateLimitExceeded(
                retry_after_seconds=result.retry_after_seconds,
                tier=result.tier,
                limit=result.limit,
                window=result.window,
                upgrade_hint=result.upgrade_hint,
            )
        return result
