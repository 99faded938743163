"""
Daily Grant Engine

Once per UTC calendar day, credits qualifying holders:
- fungible token holders get DAILY_GRANTS["fungible_token_holder"]
- collectible holders get DAILY_GRANTS["collectible_holder"]
- both categories stack

Accounts that do not qualify are re-checked on every request so holders
acquired intraday are noticed immediately. An account already granted
today is never re-checked until the next UTC day.

The credit is keyed on "daily_grant:<account_id>:<YYYY-MM-DD>", so the
grant is applied once no matter how many requests race for it.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .config import DAILY_GRANTS
from .ledger import CreditLedger
from .holder_resolver import HolderResolver
from .models import EntitlementStatus, GrantResult
from .store import short_id

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DailyGrantEngine:
    def __init__(
        self,
        ledger: CreditLedger,
        resolver: HolderResolver,
        grants: Optional[Dict[str, float]] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.ledger = ledger
        self.resolver = resolver
        self.grants = dict(grants if grants is not None else DAILY_GRANTS)
        self.clock = clock

    def today(self) -> str:
        return self.clock().astimezone(timezone.utc).date().isoformat()

    def grant_amount(self, status: EntitlementStatus, holds_collectible: bool = False) -> float:
        """
        Grant for a resolved holder.

        holds_collectible comes from a live chain check, since the resolver
        stops at the gate token. Plain gate access with neither category
        maps to the token amount.
        """
        if status.source == "gate_disabled":
            return 0.0

        fungible = status.source == "token"
        collectible = status.source.startswith("collection:") or holds_collectible

        amount = 0.0
        if fungible:
            amount += self.grants["fungible_token_holder"]
        if collectible:
            amount += self.grants["collectible_holder"]
        if not fungible and not collectible:
            amount = self.grants["fungible_token_holder"]
        return amount

    async def check_and_grant(
        self,
        account_id: str,
        address: Optional[str] = None,
        status: Optional[EntitlementStatus] = None,
    ) -> GrantResult:
        """
        Apply today's grant if it is due.

        Pass an already-resolved status to avoid a second resolution on the
        request path.
        """
        today = self.today()
        account = await self.ledger.get_account(account_id)

        if account.last_daily_grant_date == today:
            return GrantResult(granted=False, grant_date=today, reason="already_granted")

        address = address or account.wallet_address
        if status is None:
            if not address:
                return GrantResult(granted=False, grant_date=today, reason="no_wallet")
            status = await self.resolver.resolve(address)

        if not status.has_access:
            return GrantResult(granted=False, grant_date=today, reason="not_holder")

        # A token holder may also hold a collectible; both grants stack
        collection = None
        if status.source == "token":
            collection = await self.resolver.find_collection(address or status.address)

        amount = self.grant_amount(status, holds_collectible=collection is not None)
        if amount <= 0:
            return GrantResult(granted=False, grant_date=today, reason=status.source)

        details: Dict[str, Any] = {"source": status.source, "grant_date": today}
        if collection:
            details["collection"] = collection
        result = await self.ledger.credit_with_idempotency(
            account_id,
            amount,
            external_reference=f"daily_grant:{account_id}:{today}",
            reason="daily_grant",
            details=details,
        )

        # Also on a duplicate: an earlier attempt may have credited and then
        # died before recording the date
        await self.ledger.mark_daily_grant(account_id, today)

        if not result.applied:
            return GrantResult(granted=False, grant_date=today, reason="already_granted")

        logger.info(f"Daily grant of {amount} credits to {short_id(account_id)} ({status.source})")
        return GrantResult(
            granted=True,
            amount=amount,
            grant_date=today,
            reason=status.source,
            new_balance=result.new_balance,
        )
