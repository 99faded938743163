"""
Shared Counter / Cache Store

One surface, three implementations:
- RedisSharedStore: cross-instance, backed by redis.asyncio
- LocalSharedStore: process-scoped, bounded LRU with per-key TTL
- FallbackSharedStore: Redis first, local store while Redis is unreachable

Only the entitlement cache, rate counters and usage counters live here.
Nothing on the ledger path touches this store.
"""

import asyncio
import json
import logging
import math
import time
from collections import OrderedDict
from typing import Any, Callable, Optional, Tuple

from redis.exceptions import RedisError

from .config import TIMEOUTS, CACHE_CONFIG
from .errors import SharedStoreUnavailable

logger = logging.getLogger(__name__)


class RedisSharedStore:
    """Shared store on Redis. Every failure surfaces as SharedStoreUnavailable."""

    def __init__(self, redis, timeout: float = TIMEOUTS["shared_store"]):
        self.redis = redis
        self.timeout = timeout

    async def _run(self, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            raise SharedStoreUnavailable(str(e) or type(e).__name__) from e

    async def increment_with_expiry(self, key: str, window_seconds: int, amount: int = 1) -> Tuple[int, int]:
        """
        Increment a fixed-window counter, starting the window on first hit.

        Returns (count, seconds_until_reset). SET NX EX + INCRBY + TTL run in
        one MULTI/EXEC so the expiry is never lost between commands.
        """
        async def _exec():
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(key, 0, ex=window_seconds, nx=True)
                pipe.incrby(key, amount)
                pipe.ttl(key)
                return await pipe.execute()

        _, count, ttl = await self._run(_exec())
        if ttl is None or ttl < 0:
            ttl = window_seconds
        return int(count), int(ttl)

    async def get_json(self, key: str) -> Optional[Any]:
        raw = await self._run(self.redis.get(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Discarding undecodable shared store value at {key}")
            return None

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self._run(self.redis.set(key, json.dumps(value), ex=ttl_seconds))

    async def delete(self, key: str) -> None:
        await self._run(self.redis.delete(key))


class LocalSharedStore:
    """
    In-process store with the same surface as RedisSharedStore.

    Bounded: least recently used keys are evicted past max_entries.
    Expired keys are dropped on access.
    """

    def __init__(
        self,
        max_entries: int = CACHE_CONFIG["local_max_entries"],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries
        self.clock = clock
        self._entries: "OrderedDict[str, Tuple[Any, float]]" = OrderedDict()

    def _get_live(self, key: str) -> Optional[Tuple[Any, float]]:
        item = self._entries.get(key)
        if item is None:
            return None
        if item[1] <= self.clock():
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return item

    def _put(self, key: str, value: Any, expires_at: float) -> None:
        self._entries[key] = (value, expires_at)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    async def increment_with_expiry(self, key: str, window_seconds: int, amount: int = 1) -> Tuple[int, int]:
        now = self.clock()
        item = self._get_live(key)
        if item is None:
            count, expires_at = 0, now + window_seconds
        else:
            count, expires_at = item

        count += amount
        self._put(key, count, expires_at)
        return count, max(1, math.ceil(expires_at - now))

    async def get_json(self, key: str) -> Optional[Any]:
        item = self._get_live(key)
        return None if item is None else json.loads(item[0])

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._put(key, json.dumps(value), self.clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class FallbackSharedStore:
    """
    Routes to the shared store and degrades to the local one when the
    shared store is missing or unreachable.

    In degraded mode rate limits hold per instance instead of globally and
    cached entitlements are not shared; the service keeps working.
    """

    def __init__(self, primary: Optional[RedisSharedStore], local: Optional[LocalSharedStore] = None):
        self.primary = primary
        self.local = local or LocalSharedStore()
        self.degraded = primary is None

    def _mark(self, ok: bool, error: Optional[Exception] = None) -> None:
        if ok and self.degraded and self.primary is not None:
            logger.info("Shared store reachable again; leaving local fallback")
        elif not ok and not self.degraded:
            logger.warning(f"Shared store unavailable ({error}); falling back to local store")
        self.degraded = not ok

    async def _call(self, method: str, *args):
        if self.primary is not None:
            try:
                result = await getattr(self.primary, method)(*args)
                self._mark(True)
                return result
            except SharedStoreUnavailable as e:
                self._mark(False, e)
        return await getattr(self.local, method)(*args)

    async def increment_with_expiry(self, key: str, window_seconds: int, amount: int = 1) -> Tuple[int, int]:
        return await self._call("increment_with_expiry", key, window_seconds, amount)

    async def get_json(self, key: str) -> Optional[Any]:
        return await self._call("get_json", key)

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self._call("set_json", key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        await self.local.delete(key)
        if self.primary is not None:
            try:
                await self.primary.delete(key)
            except SharedStoreUnavailable as e:
                self._mark(False, e)
