"""
Account Store - MongoDB persistence for accounts, ledger and settlements

Collections (additive only):
- accounts: one document per account, balances as integer tenths
- credit_ledger: append-only entries, unique on (external_reference, reason)
- pay_per_call_settlements: settlement claims, unique on proof_hash

CRITICAL: Balance decrements are single conditional updates evaluated by
MongoDB ({"credit_balance_units": {"$gte": n}} + $inc). There is no
read-then-write anywhere on the balance path.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .config import CREDIT_SCALE, TIMEOUTS

logger = logging.getLogger(__name__)

ACCOUNTS = "accounts"
LEDGER = "credit_ledger"
SETTLEMENTS = "pay_per_call_settlements"


def to_units(credits: float) -> int:
    return int(round(credits * CREDIT_SCALE))


def from_units(units: int) -> float:
    return round((units or 0) / CREDIT_SCALE, 1)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def short_id(value: Optional[str]) -> str:
    """Truncate account ids and addresses for log lines."""
    if not value:
        return "<none>"
    return value if len(value) <= 13 else f"{value[:10]}..."


class AccountStore:
    """Async MongoDB access for the credit engine."""

    def __init__(self, db, timeout: float = TIMEOUTS["account_lookup"]):
        self.db = db
        self.timeout = timeout

    async def _run(self, awaitable):
        result = await asyncio.wait_for(awaitable, timeout=self.timeout)
        # find_one_and_update returns the raw document, _id included
        if isinstance(result, dict):
            result.pop("_id", None)
        return result

    # ==================== ACCOUNTS ====================

    async def find_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        return await self._run(self.db[ACCOUNTS].find_one({"account_id": account_id}, {"_id": 0}))

    async def find_account_by_wallet(self, wallet_address: str) -> Optional[Dict[str, Any]]:
        return await self._run(
            self.db[ACCOUNTS].find_one({"wallet_address": wallet_address}, {"_id": 0})
        )

    async def create_account_if_missing(self, account_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Upsert with $setOnInsert so concurrent creators converge on one document."""
        now = _now_iso()
        doc = {
            "account_id": account_id,
            "credit_balance_units": 0,
            "total_earned_units": 0,
            "total_spent_units": 0,
            "last_daily_grant_date": None,
            "created_at": now,
            **fields,
        }
        doc["updated_at"] = now
        await self._run(
            self.db[ACCOUNTS].update_one(
                {"account_id": account_id},
                {"$setOnInsert": doc},
                upsert=True,
            )
        )
        return await self.find_account(account_id)

    async def conditional_update_balance(
        self,
        account_id: str,
        min_balance_units: int,
        delta_units: int,
        extra_inc: Optional[Dict[str, int]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Apply delta only if credit_balance_units >= min_balance_units.

        Returns the updated document, or None when the predicate failed
        (insufficient balance or unknown account).
        """
        inc = {"credit_balance_units": delta_units}
        if extra_inc:
            inc.update(extra_inc)

        return await self._run(
            self.db[ACCOUNTS].find_one_and_update(
                {"account_id": account_id, "credit_balance_units": {"$gte": min_balance_units}},
                {"$inc": inc, "$set": {"updated_at": _now_iso()}},
                return_document=ReturnDocument.AFTER,
            )
        )

    async def increment_balance(
        self,
        account_id: str,
        delta_units: int,
        extra_inc: Optional[Dict[str, int]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Unconditional $inc for credits. None if the account does not exist."""
        inc = {"credit_balance_units": delta_units}
        if extra_inc:
            inc.update(extra_inc)

        return await self._run(
            self.db[ACCOUNTS].find_one_and_update(
                {"account_id": account_id},
                {"$inc": inc, "$set": {"updated_at": _now_iso()}},
                return_document=ReturnDocument.AFTER,
            )
        )

    async def set_last_grant_date(self, account_id: str, grant_date: str) -> bool:
        result = await self._run(
            self.db[ACCOUNTS].update_one(
                {"account_id": account_id, "last_daily_grant_date": {"$ne": grant_date}},
                {"$set": {"last_daily_grant_date": grant_date, "updated_at": _now_iso()}},
            )
        )
        return result.modified_count > 0

    async def update_holder_hint(self, account_id: str, hint: Dict[str, Any]) -> None:
        await self._run(
            self.db[ACCOUNTS].update_one(
                {"account_id": account_id},
                {"$set": {"holder_status_hint": hint}},
            )
        )

    # ==================== LEDGER ====================

    async def insert_ledger_entry(self, entry: Dict[str, Any]) -> bool:
        """
        Append an entry keyed on (external_reference, reason).

        Returns False when an entry with the same key already exists - the
        unique index is the idempotency decision.
        """
        try:
            await self._run(self.db[LEDGER].insert_one(dict(entry)))
            return True
        except DuplicateKeyError:
            return False

    async def find_ledger_entry(self, external_reference: str, reason: str) -> Optional[Dict[str, Any]]:
        return await self._run(
            self.db[LEDGER].find_one(
                {"external_reference": external_reference, "reason": reason},
                {"_id": 0},
            )
        )

    async def transition_ledger_entry(
        self,
        external_reference: str,
        reason: str,
        from_state: str,
        to_state: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Move an entry between states; None if it was not in from_state."""
        update = {"state": to_state, "state_changed_at": _now_iso()}
        if extra:
            update.update(extra)
        return await self._run(
            self.db[LEDGER].find_one_and_update(
                {"external_reference": external_reference, "reason": reason, "state": from_state},
                {"$set": update},
                return_document=ReturnDocument.AFTER,
            )
        )

    async def find_stale_entries(
        self, state: str, created_before: str, limit: int = 100
    ) -> List[Dict[str, Any]]:
        cursor = self.db[LEDGER].find(
            {"state": state, "timestamp": {"$lt": created_before}},
            {"_id": 0},
        ).limit(limit)
        return await self._run(cursor.to_list(length=limit))

    async def list_ledger(self, account_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        cursor = self.db[LEDGER].find(
            {"account_id": account_id},
            {"_id": 0},
        ).sort("timestamp", -1).limit(limit)
        return await self._run(cursor.to_list(length=limit))

    # ==================== SETTLEMENTS ====================
    # status: verified (claimed by one request) -> settling -> settled

    async def claim_proof(self, proof_hash: str, claim_id: str, doc: Dict[str, Any],
                          stale_before: str) -> bool:
        """
        Reserve a verified proof for exactly one request.

        A "verified" claim older than stale_before belonged to a request that
        never finished and may be taken over.
        """
        now = _now_iso()
        try:
            await self._run(
                self.db[SETTLEMENTS].insert_one(
                    {"proof_hash": proof_hash, "claim_id": claim_id, "status": "verified",
                     "created_at": now, **doc}
                )
            )
            return True
        except DuplicateKeyError:
            pass

        result = await self._run(
            self.db[SETTLEMENTS].update_one(
                {"proof_hash": proof_hash, "status": "verified", "created_at": {"$lt": stale_before}},
                {"$set": {"claim_id": claim_id, "created_at": now, **doc}},
            )
        )
        return result.modified_count > 0

    async def begin_settlement(self, proof_hash: str, claim_id: str) -> bool:
        result = await self._run(
            self.db[SETTLEMENTS].update_one(
                {"proof_hash": proof_hash, "claim_id": claim_id, "status": "verified"},
                {"$set": {"status": "settling", "settling_at": _now_iso()}},
            )
        )
        return result.modified_count > 0

    async def get_settlement(self, proof_hash: str) -> Optional[Dict[str, Any]]:
        return await self._run(self.db[SETTLEMENTS].find_one({"proof_hash": proof_hash}, {"_id": 0}))

    async def complete_settlement(self, proof_hash: str, claim_id: str, fields: Dict[str, Any]) -> None:
        await self._run(
            self.db[SETTLEMENTS].update_one(
                {"proof_hash": proof_hash, "claim_id": claim_id},
                {"$set": {"status": "settled", "settled_at": _now_iso(), **fields}},
            )
        )

    async def reopen_settlement(self, proof_hash: str, claim_id: str) -> None:
        """Return a failed settle to "verified" so the claiming request can retry."""
        await self._run(
            self.db[SETTLEMENTS].update_one(
                {"proof_hash": proof_hash, "claim_id": claim_id, "status": "settling"},
                {"$set": {"status": "verified"}},
            )
        )

    async def release_proof(self, proof_hash: str, claim_id: str) -> None:
        """Drop an unsettled claim so the same proof can pay for a later request."""
        await self._run(
            self.db[SETTLEMENTS].delete_one(
                {"proof_hash": proof_hash, "claim_id": claim_id, "status": "verified"}
            )
        )
