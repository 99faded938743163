"""
Holder Resolver

Decides whether an address holds the gating token or a qualifying
collection, fronted by the entitlement cache.

Resolution order (first match wins, later sources are not queried):
1. Primary gate token (fungible balance or collectible count)
2. Each entry of QUALIFYING_COLLECTIONS, in configured order

Fails closed: any chain error means has_access=False, and the failure is
NOT cached so the next request retries immediately.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from .chain import ChainBalanceSource, normalize_address
from .config import TOKEN_GATE, QUALIFYING_COLLECTIONS
from .entitlement_cache import EntitlementCache
from .errors import EntitlementResolutionFailed, SharedStoreUnavailable
from .models import EntitlementStatus

logger = logging.getLogger(__name__)


class HolderResolver:
    def __init__(
        self,
        chain: ChainBalanceSource,
        cache: EntitlementCache,
        gate: Optional[Dict[str, Any]] = None,
        collections: Optional[List[Dict[str, Any]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.chain = chain
        self.cache = cache
        self.gate = dict(gate if gate is not None else TOKEN_GATE)
        self.collections = list(collections if collections is not None else QUALIFYING_COLLECTIONS)
        self.clock = clock

    @property
    def chain_id(self) -> str:
        return str(self.gate.get("chain_id", ""))

    def _status(self, address: str, has_access: bool, source: str, balance: float = 0.0) -> EntitlementStatus:
        return EntitlementStatus(
            address=address,
            has_access=has_access,
            balance=balance,
            source=source,
            required_balance=float(self.gate.get("minimum_balance", 0)),
            chain_id=self.chain_id,
            resolved_at=self.clock(),
        )

    async def resolve(self, address: Optional[str]) -> EntitlementStatus:
        """Holder status for an address; never raises for chain failures."""
        if not self.gate.get("enabled", True):
            return self._status(address or "", True, "gate_disabled")

        normalized = normalize_address(address, self.chain_id)
        if not normalized:
            return self._status(address or "", False, "none")

        try:
            cached = await self.cache.get(normalized)
        except SharedStoreUnavailable as e:
            logger.warning(f"Entitlement cache read failed: {e}")
            cached = None

        if cached is not None:
            return cached

        try:
            status = await self._query(normalized)
        except EntitlementResolutionFailed as e:
            logger.error(f"Holder resolution failed for {normalized[:10]}...: {e}")
            return self._status(normalized, False, "none")

        try:
            await self.cache.put(status)
        except SharedStoreUnavailable as e:
            logger.warning(f"Entitlement cache write failed: {e}")

        return status

    async def invalidate(self, address: Optional[str]) -> None:
        normalized = normalize_address(address, self.chain_id)
        if normalized:
            await self.cache.invalidate(normalized)

    async def find_collection(self, address: Optional[str]) -> Optional[str]:
        """
        Name of the first qualifying collection the address holds, read from chain.

        resolve() stops at the gate token, so a token holder's collectibles
        are only known through this call. Chain errors count as not holding.
        """
        normalized = normalize_address(address, self.chain_id)
        if not normalized:
            return None
        try:
            match = await self._first_collection(normalized)
        except EntitlementResolutionFailed as e:
            logger.error(f"Collection check failed for {normalized[:10]}...: {e}")
            return None
        return match[0] if match else None

    async def _first_collection(self, address: str) -> Optional[Tuple[str, int]]:
        for collection in self.collections:
            chain_id = str(collection.get("chain_id", self.chain_id))
            holder = normalize_address(address, chain_id)
            if not holder:
                continue

            count = await self.chain.get_collectible_count(holder, collection["contract_address"], chain_id)
            if count >= int(collection.get("minimum", 1)):
                return collection.get("name", collection["contract_address"]), count
        return None

    async def _query(self, address: str) -> EntitlementStatus:
        token_balance = 0.0
        contract = self.gate.get("contract_address")

        if contract:
            if self.gate.get("is_fungible", True):
                raw = await self.chain.get_fungible_balance(address, contract, self.chain_id)
                token_balance = raw / (10 ** int(self.gate.get("decimals", 18)))
            else:
                token_balance = float(await self.chain.get_collectible_count(address, contract, self.chain_id))

            if token_balance >= float(self.gate.get("minimum_balance", 0)) and token_balance > 0:
                logger.info(f"{address[:10]}... holds {token_balance} {self.gate.get('name', 'token')}")
                return self._status(address, True, "token", token_balance)
        elif not self.collections:
            logger.warning("Token gate enabled but no contract or collections configured")

        match = await self._first_collection(address)
        if match:
            name, count = match
            logger.info(f"{address[:10]}... holds {count} of collection {name}")
            return self._status(address, True, f"collection:{name}", float(count))

        return self._status(address, False, "none", token_balance)
