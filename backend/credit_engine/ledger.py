"""
Credit Ledger

Owns every mutation of an account's credit balance:
- Lazy account creation
- Authorize-and-deduct (atomic, concurrency-safe)
- Commit / refund of a reserved charge
- Idempotent credits (purchases, daily grants, refunds, adjustments)
- Reconciliation of entries left pending by a crashed writer

CRITICAL: Deductions are a single conditional update evaluated by MongoDB.
Credits are keyed on (external_reference, reason); the unique index makes
the ledger insert the idempotency decision, so a retried webhook or grant
check can never apply twice.
"""

import asyncio
import logging
import math
import uuid
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, List

from pymongo.errors import PyMongoError

from .config import MAX_CHARGE_CREDITS, MAX_CREDIT_AMOUNT, CREDIT_SCALE
from .errors import (
    AccountNotFound,
    ChargeConflict,
    ChargeNotFound,
    ChargeNotRefundable,
    InsufficientCredits,
    InvalidCreditAmount,
)
from .models import Account, ChargeResult, CreditResult, LedgerEntry
from .store import AccountStore, to_units, from_units, short_id

logger = logging.getLogger(__name__)

CHARGE = "generation_charge"
CREDIT_REASONS = {"purchase", "daily_grant", "refund", "manual_adjustment"}


def account_from_doc(doc: Dict[str, Any]) -> Account:
    fields = {k: v for k, v in doc.items() if not k.endswith("_units")}
    return Account(
        **fields,
        credit_balance=from_units(doc.get("credit_balance_units", 0)),
        total_earned=from_units(doc.get("total_earned_units", 0)),
        total_spent=from_units(doc.get("total_spent_units", 0)),
    )


def validate_amount(amount, ceiling: float = MAX_CHARGE_CREDITS) -> int:
    """
    Check a credit amount and convert it to integer tenths.

    Rejects non-numbers, NaN/inf, zero or negative values, anything above
    the ceiling, and amounts with more than one decimal place.
    """
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise InvalidCreditAmount("Credit amount must be a number", amount=str(amount))

    if not math.isfinite(amount) or amount <= 0:
        raise InvalidCreditAmount("Credit amount must be a finite positive number", amount=str(amount))

    if amount > ceiling:
        raise InvalidCreditAmount(
            f"Credit amount exceeds the maximum of {ceiling}",
            amount=amount,
            maximum=ceiling,
        )

    units = to_units(amount)
    if abs(amount * CREDIT_SCALE - units) > 1e-6:
        raise InvalidCreditAmount("Credit amount supports at most one decimal place", amount=amount)

    return units


class CreditLedger:
    """Authoritative balance and append-only ledger per account."""

    def __init__(self, store: AccountStore):
        self.store = store

    # ==================== ACCOUNTS ====================

    async def get_or_create_account(
        self,
        account_id: str,
        wallet_address: Optional[str] = None,
        source: str = "wallet",
    ) -> Account:
        """
        Get existing account or create one lazily with a zero balance.

        Uses $setOnInsert so concurrent first requests converge on one document.
        """
        doc = await self.store.find_account(account_id)
        if doc:
            return account_from_doc(doc)

        fields = {"source": source}
        if wallet_address:
            fields["wallet_address"] = wallet_address

        doc = await self.store.create_account_if_missing(account_id, fields)
        logger.info(f"Created credit account {short_id(account_id)} (source={source})")
        return account_from_doc(doc)

    async def get_account(self, account_id: str) -> Account:
        doc = await self.store.find_account(account_id)
        if not doc:
            raise AccountNotFound(account_id=account_id)
        return account_from_doc(doc)

    async def get_balance(self, account_id: str) -> float:
        account = await self.get_account(account_id)
        return account.credit_balance

    async def mark_daily_grant(self, account_id: str, grant_date: str) -> bool:
        return await self.store.set_last_grant_date(account_id, grant_date)

    async def set_holder_hint(self, account_id: str, has_access: bool, source: str) -> None:
        """Advisory only; failures are logged and ignored."""
        hint = {
            "has_access": has_access,
            "source": source,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self.store.update_holder_hint(account_id, hint)
        except (PyMongoError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not refresh holder hint for {short_id(account_id)}: {e}")

    async def get_ledger(self, account_id: str, limit: int = 50) -> List[LedgerEntry]:
        """Ledger entries for an account, most recent first."""
        entries = await self.store.list_ledger(account_id, limit=limit)
        return [LedgerEntry(**entry) for entry in entries]

    # ==================== CHARGES ====================

    async def authorize_and_deduct(
        self,
        account_id: str,
        amount: float,
        charge_reference: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        """
        Atomically check balance >= amount and decrement it.

        The check and the decrement are one find_one_and_update with a $gte
        predicate, so two concurrent callers can never both spend the same
        credits. The charge is recorded in state "reserved" until commit()
        or refund_charge().

        Raises:
            InvalidCreditAmount: amount rejected before any mutation
            InsufficientCredits: balance does not cover the amount
            AccountNotFound: no such account
            ChargeConflict: charge_reference already used for a different charge
        """
        units = validate_amount(amount)

        if charge_reference:
            existing = await self.store.find_ledger_entry(charge_reference, CHARGE)
            if existing:
                return await self._replay_charge(existing, account_id, units)
        else:
            charge_reference = f"charge:{uuid.uuid4()}"

        updated = await self.store.conditional_update_balance(
            account_id,
            min_balance_units=units,
            delta_units=-units,
            extra_inc={"total_spent_units": units},
        )

        if updated is None:
            doc = await self.store.find_account(account_id)
            if not doc:
                raise AccountNotFound(account_id=account_id)
            available = from_units(doc.get("credit_balance_units", 0))
            logger.info(
                f"Insufficient credits for {short_id(account_id)}: "
                f"need {from_units(units)}, have {available}"
            )
            raise InsufficientCredits(required=from_units(units), available=available)

        new_balance_units = updated["credit_balance_units"]
        try:
            inserted = await self.store.insert_ledger_entry({
                "account_id": account_id,
                "delta": -from_units(units),
                "delta_units": -units,
                "reason": CHARGE,
                "external_reference": charge_reference,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "state": "reserved",
                "balance_after_units": new_balance_units,
                "details": details or {},
            })
        except (PyMongoError, asyncio.TimeoutError):
            await self._reverse_unrecorded_charge(account_id, units, charge_reference)
            raise

        if not inserted:
            # Another caller recorded this reference between our check and insert
            await self.store.increment_balance(
                account_id, units, extra_inc={"total_spent_units": -units}
            )
            logger.warning(f"Charge reference {charge_reference} raced; deduction reversed")
            raise ChargeConflict(charge_reference=charge_reference)

        logger.info(
            f"Charged {from_units(units)} credits to {short_id(account_id)} "
            f"(ref={charge_reference}, balance={from_units(new_balance_units)})"
        )

        return ChargeResult(
            account_id=account_id,
            charge_reference=charge_reference,
            credits_charged=from_units(units),
            new_balance=from_units(new_balance_units),
        )

    async def _reverse_unrecorded_charge(self, account_id: str, units: int, charge_reference: str) -> None:
        """
        Give back a deduction whose ledger insert failed.

        A timed-out insert may still have landed; such an entry is moved to
        "reversed" so it can never be refunded on top of this reversal.
        """
        await self.store.increment_balance(
            account_id, units, extra_inc={"total_spent_units": -units}
        )
        logger.error(
            f"Ledger write failed for charge {charge_reference}; "
            f"{from_units(units)} credits returned to {short_id(account_id)}"
        )
        try:
            await self.store.transition_ledger_entry(charge_reference, CHARGE, "reserved", "reversed")
        except (PyMongoError, asyncio.TimeoutError) as e:
            logger.error(f"Could not mark charge {charge_reference} reversed: {e}")

    async def _replay_charge(self, existing: Dict[str, Any], account_id: str, units: int) -> ChargeResult:
        """A retried charge with a known reference returns the original result."""
        if (
            existing["account_id"] != account_id
            or existing.get("delta_units") != -units
            or existing.get("state") == "reversed"
        ):
            raise ChargeConflict(charge_reference=existing["external_reference"])

        doc = await self.store.find_account(account_id)
        balance = from_units(doc.get("credit_balance_units", 0)) if doc else 0.0

        return ChargeResult(
            account_id=account_id,
            charge_reference=existing["external_reference"],
            credits_charged=from_units(units),
            new_balance=balance,
        )

    async def commit(self, charge_reference: str) -> bool:
        """
        Mark a reserved charge as committed; it can no longer be refunded.

        Returns False if the charge was already refunded.
        """
        entry = await self.store.transition_ledger_entry(charge_reference, CHARGE, "reserved", "committed")
        if entry:
            return True

        existing = await self.store.find_ledger_entry(charge_reference, CHARGE)
        if not existing:
            raise ChargeNotFound(charge_reference=charge_reference)

        return existing["state"] == "committed"

    async def refund_charge(self, charge_reference: str, reason: str = "generation failed") -> CreditResult:
        """
        Refund a reserved charge by its reference.

        The refund is keyed on "refund:<charge_reference>", so calling this
        any number of times credits the account once.
        """
        claimed = await self.store.transition_ledger_entry(charge_reference, CHARGE, "reserved", "refunded")
        charge = claimed or await self.store.find_ledger_entry(charge_reference, CHARGE)

        if not charge:
            raise ChargeNotFound(charge_reference=charge_reference)

        if charge["state"] in ("committed", "reversed"):
            raise ChargeNotRefundable(charge_reference=charge_reference)

        # State is "refunded" here: either we just claimed it or an earlier
        # attempt did and may have stopped before crediting.
        return await self._apply_credit(
            account_id=charge["account_id"],
            units=-charge["delta_units"],
            external_reference=f"refund:{charge_reference}",
            reason="refund",
            details={"charge_reference": charge_reference, "note": reason},
        )

    async def refund(
        self,
        account_id: str,
        amount: float,
        reason: str,
        reference: Optional[str] = None,
    ) -> CreditResult:
        """Low-level refund. Idempotent when a reference is given."""
        units = validate_amount(amount)
        await self.get_account(account_id)

        return await self._apply_credit(
            account_id=account_id,
            units=units,
            external_reference=reference or f"refund:{uuid.uuid4()}",
            reason="refund",
            details={"note": reason},
        )

    # ==================== CREDITS ====================

    async def credit_with_idempotency(
        self,
        account_id: str,
        amount: float,
        external_reference: str,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> CreditResult:
        """
        Credit an account at most once per (external_reference, reason).

        Returns applied=False when the reference was already recorded;
        that is the success path for a retry, not an error.
        """
        if reason not in CREDIT_REASONS:
            raise ValueError(f"Unsupported credit reason: {reason}")
        if not external_reference:
            raise ValueError("external_reference is required")

        units = validate_amount(amount, ceiling=MAX_CREDIT_AMOUNT)
        await self.get_account(account_id)

        return await self._apply_credit(account_id, units, external_reference, reason, details)

    async def credit_purchase(
        self,
        account_id: str,
        credits: float,
        invoice_id: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> CreditResult:
        return await self.credit_with_idempotency(
            account_id, credits, f"purchase:{invoice_id}", "purchase", details
        )

    async def manual_adjustment(
        self,
        account_id: str,
        delta: float,
        reference: str,
        note: str = "",
    ) -> CreditResult:
        """
        Signed operator adjustment, idempotent on reference.

        Negative adjustments go through the same conditional decrement as
        charges and raise InsufficientCredits rather than go negative.
        """
        if isinstance(delta, (int, float)) and not isinstance(delta, bool) and delta < 0:
            units = -validate_amount(-delta, ceiling=MAX_CREDIT_AMOUNT)
        else:
            units = validate_amount(delta, ceiling=MAX_CREDIT_AMOUNT)

        await self.get_account(account_id)

        return await self._apply_credit(
            account_id, units, reference, "manual_adjustment", {"note": note}
        )

    async def record_pay_per_call(self, account_id: str, proof_hash: str, details: Dict[str, Any]) -> bool:
        """Zero-delta audit entry for a settled pay-per-call request."""
        inserted = await self.store.insert_ledger_entry({
            "account_id": account_id,
            "delta": 0.0,
            "delta_units": 0,
            "reason": "pay_per_call_bypass",
            "external_reference": f"x402:{proof_hash}",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "state": "applied",
            "details": details,
        })
        if inserted:
            logger.info(f"Recorded pay-per-call settlement for {short_id(account_id)}")
        return inserted

    async def _apply_credit(
        self,
        account_id: str,
        units: int,
        external_reference: str,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> CreditResult:
        entry = {
            "account_id": account_id,
            "delta": from_units(units),
            "delta_units": units,
            "reason": reason,
            "external_reference": external_reference,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "state": "pending",
            "details": details or {},
        }

        if not await self.store.insert_ledger_entry(entry):
            # A declined entry (account missing or balance short at the time)
            # may be retried under the same reference
            reopened = await self.store.transition_ledger_entry(
                external_reference, reason, "declined", "pending"
            )
            if not reopened:
                logger.info(f"Duplicate {reason} for {short_id(account_id)} ref={external_reference}; skipped")
                return CreditResult(
                    applied=False,
                    account_id=account_id,
                    external_reference=external_reference,
                    amount=from_units(units),
                )
            entry = reopened

        return await self._apply_entry(entry)

    async def _apply_entry(self, entry: Dict[str, Any]) -> CreditResult:
        """
        Apply a pending entry's delta to the balance exactly once.

        The pending -> applying transition is the claim; whoever wins it
        applies the $inc.
        """
        ref = entry["external_reference"]
        reason = entry["reason"]
        account_id = entry["account_id"]
        units = entry["delta_units"]

        claimed = await self.store.transition_ledger_entry(ref, reason, "pending", "applying")
        if not claimed:
            return CreditResult(
                applied=True,
                account_id=account_id,
                external_reference=ref,
                amount=from_units(units),
            )

        if units >= 0:
            extra = {"total_spent_units": -units} if reason == "refund" else {"total_earned_units": units}
            updated = await self.store.increment_balance(account_id, units, extra_inc=extra)
        else:
            updated = await self.store.conditional_update_balance(account_id, -units, units)

        if updated is None:
            await self.store.transition_ledger_entry(ref, reason, "applying", "declined")
            doc = await self.store.find_account(account_id)
            if not doc:
                raise AccountNotFound(account_id=account_id)
            raise InsufficientCredits(
                required=from_units(-units),
                available=from_units(doc.get("credit_balance_units", 0)),
            )

        await self.store.transition_ledger_entry(
            ref, reason, "applying", "applied",
            extra={"balance_after_units": updated["credit_balance_units"]},
        )

        logger.info(
            f"Applied {reason} {from_units(units):+} credits to {short_id(account_id)} "
            f"(ref={ref}, balance={from_units(updated['credit_balance_units'])})"
        )

        return CreditResult(
            applied=True,
            account_id=account_id,
            external_reference=ref,
            amount=from_units(units),
            new_balance=from_units(updated["credit_balance_units"]),
        )

    # ==================== RECONCILIATION ====================

    async def reconcile_pending(self, older_than_seconds: int = 300, limit: int = 100) -> int:
        """
        Finish credits left "pending" by a writer that died after the insert.

        Returns the number of entries applied. Entries stuck in "applying"
        cannot be resolved automatically and are only reported.
        """
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)).isoformat()
        applied = 0

        for entry in await self.store.find_stale_entries("pending", cutoff, limit=limit):
            try:
                result = await self._apply_entry(entry)
            except (AccountNotFound, InsufficientCredits) as e:
                logger.error(f"Reconcile declined {entry['external_reference']}: {e.message}")
                continue
            if result.new_balance is not None:
                applied += 1

        stuck = await self.store.find_stale_entries("applying", cutoff, limit=limit)
        for entry in stuck:
            logger.error(
                f"Ledger entry {entry['external_reference']} ({entry['reason']}) stuck in "
                f"applying for {short_id(entry['account_id'])}; needs manual review"
            )

        if applied:
            logger.info(f"Reconciled {applied} pending ledger entries")
        return applied
