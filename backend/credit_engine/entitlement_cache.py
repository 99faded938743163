"""
Entitlement Cache

Time-bounded cache of resolved holder status, keyed by normalized address.
Entries expire after a fixed TTL and are then re-resolved, never served stale.
Only successful resolutions are written here.
"""

import logging
from typing import Optional

from .config import CACHE_CONFIG
from .models import EntitlementStatus

logger = logging.getLogger(__name__)


class EntitlementCache:
    def __init__(
        self,
        store,
        ttl_seconds: int = CACHE_CONFIG["entitlement_ttl_seconds"],
        key_prefix: str = CACHE_CONFIG["key_prefix"],
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    def _key(self, address: str) -> str:
        return f"{self.key_prefix}{address}"

    async def get(self, address: str) -> Optional[EntitlementStatus]:
        data = await self.store.get_json(self._key(address))
        if not data:
            return None
        try:
            return EntitlementStatus(**data)
        except (TypeError, ValueError):
            logger.warning(f"Dropping malformed entitlement cache entry for {address[:10]}...")
            await self.store.delete(self._key(address))
            return None

    async def put(self, status: EntitlementStatus) -> None:
        await self.store.set_json(self._key(status.address), status.model_dump(), self.ttl_seconds)

    async def invalidate(self, address: str) -> None:
        await self.store.delete(self._key(address))
