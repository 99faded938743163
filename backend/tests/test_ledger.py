"""
Test Suite: Credit Ledger
=========================

- Authorize-and-deduct never overdraws, including under concurrency
- Amount validation happens before any mutation
- Credits apply at most once per (reference, reason)
- Charge lifecycle: reserved -> committed | refunded, reversed when the write fails
- Reconciliation of pending entries
"""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import WALLET, fund
from credit_engine.errors import (
    AccountNotFound,
    ChargeConflict,
    ChargeNotFound,
    ChargeNotRefundable,
    InsufficientCredits,
    InvalidCreditAmount,
)
from credit_engine.ledger import CHARGE, validate_amount


class TestAccounts:

    @pytest.mark.asyncio
    async def test_lazy_creation_zero_balance(self, ledger):
        account = await ledger.get_or_create_account("acct-1", wallet_address=WALLET)
        assert account.credit_balance == 0.0
        assert account.wallet_address == WALLET
        assert account.last_daily_grant_date is None

    @pytest.mark.asyncio
    async def test_concurrent_creation_converges(self, ledger, db):
        await asyncio.gather(*[ledger.get_or_create_account("acct-1") for _ in range(10)])
        assert await db["accounts"].count_documents({"account_id": "acct-1"}) == 1

    @pytest.mark.asyncio
    async def test_get_unknown_account(self, ledger):
        with pytest.raises(AccountNotFound):
            await ledger.get_account("missing")

    @pytest.mark.asyncio
    async def test_holder_hint_is_stored(self, ledger):
        await ledger.get_or_create_account("acct-1")
        await ledger.set_holder_hint("acct-1", True, "token")
        account = await ledger.get_account("acct-1")
        assert account.holder_status_hint.has_access is True
        assert account.holder_status_hint.source == "token"


class TestAccountStore:

    @pytest.mark.asyncio
    async def test_conditional_update_returns_updated_document(self, ledger, store):
        await fund(ledger, "acct-1", 10)

        updated = await store.conditional_update_balance("acct-1", min_balance_units=30, delta_units=-30)

        assert updated is not None
        assert updated["credit_balance_units"] == 70
        assert "_id" not in updated

    @pytest.mark.asyncio
    async def test_conditional_update_predicate_fails(self, ledger, store):
        await fund(ledger, "acct-1", 1)
        assert await store.conditional_update_balance("acct-1", min_balance_units=30, delta_units=-30) is None
        assert await ledger.get_balance("acct-1") == 1.0

    @pytest.mark.asyncio
    async def test_transition_returns_entry(self, ledger, store):
        await fund(ledger, "acct-1", 10)
        charge = await ledger.authorize_and_deduct("acct-1", 1)

        entry = await store.transition_ledger_entry(charge.charge_reference, CHARGE, "reserved", "committed")

        assert entry["state"] == "committed"
        assert "_id" not in entry
        assert await store.transition_ledger_entry(charge.charge_reference, CHARGE, "reserved", "committed") is None


class TestValidateAmount:

    @pytest.mark.parametrize("amount", [0, -1, float("nan"), float("inf"), True, "1", None, 10001, 0.05])
    def test_rejected(self, amount):
        with pytest.raises(InvalidCreditAmount):
            validate_amount(amount)

    def test_accepted_as_tenths(self):
        assert validate_amount(0.3) == 3
        assert validate_amount(1.2) == 12
        assert validate_amount(10000) == 100000


class TestAuthorizeAndDeduct:

    @pytest.mark.asyncio
    async def test_deducts_and_reports_balance(self, ledger):
        await fund(ledger, "acct-1", 10)
        result = await ledger.authorize_and_deduct("acct-1", 2.5)
        assert result.ok
        assert result.credits_charged == 2.5
        assert result.new_balance == 7.5
        assert result.charge_reference.startswith("charge:")

    @pytest.mark.asyncio
    async def test_insufficient_leaves_balance_unchanged(self, ledger):
        await fund(ledger, "acct-1", 1)
        with pytest.raises(InsufficientCredits) as exc_info:
            await ledger.authorize_and_deduct("acct-1", 1.5)
        detail = exc_info.value.to_detail()
        assert detail["error_code"] == "INSUFFICIENT_CREDITS"
        assert detail["credits_required"] == 1.5
        assert detail["credits_available"] == 1.0
        assert await ledger.get_balance("acct-1") == 1.0

    @pytest.mark.asyncio
    async def test_exact_balance_can_be_spent(self, ledger):
        await fund(ledger, "acct-1", 0.9)
        for _ in range(3):
            await ledger.authorize_and_deduct("acct-1", 0.3)
        assert await ledger.get_balance("acct-1") == 0.0

    @pytest.mark.asyncio
    async def test_invalid_amount_no_mutation(self, ledger, db):
        await fund(ledger, "acct-1", 10)
        before = await db["credit_ledger"].count_documents({})
        with pytest.raises(InvalidCreditAmount):
            await ledger.authorize_and_deduct("acct-1", -1)
        assert await ledger.get_balance("acct-1") == 10.0
        assert await db["credit_ledger"].count_documents({}) == before

    @pytest.mark.asyncio
    async def test_unknown_account(self, ledger):
        with pytest.raises(AccountNotFound):
            await ledger.authorize_and_deduct("missing", 1)

    @pytest.mark.asyncio
    async def test_two_concurrent_spends_of_whole_balance(self, ledger):
        await fund(ledger, "acct-1", 5)
        results = await asyncio.gather(
            ledger.authorize_and_deduct("acct-1", 5),
            ledger.authorize_and_deduct("acct-1", 5),
            return_exceptions=True,
        )
        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, InsufficientCredits)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert await ledger.get_balance("acct-1") == 0.0

    @pytest.mark.asyncio
    async def test_many_concurrent_spends_never_overdraw(self, ledger):
        await fund(ledger, "acct-1", 10)
        results = await asyncio.gather(
            *[ledger.authorize_and_deduct("acct-1", 1) for _ in range(20)],
            return_exceptions=True,
        )
        assert sum(1 for r in results if not isinstance(r, Exception)) == 10
        assert await ledger.get_balance("acct-1") == 0.0

    @pytest.mark.asyncio
    async def test_charge_recorded_as_reserved(self, ledger, store):
        await fund(ledger, "acct-1", 10)
        result = await ledger.authorize_and_deduct("acct-1", 2, details={"unit_kind": "flux-pro"})
        entry = await store.find_ledger_entry(result.charge_reference, CHARGE)
        assert entry["state"] == "reserved"
        assert entry["delta"] == -2.0
        assert entry["details"]["unit_kind"] == "flux-pro"

    @pytest.mark.asyncio
    async def test_retried_reference_replays(self, ledger):
        await fund(ledger, "acct-1", 10)
        first = await ledger.authorize_and_deduct("acct-1", 2, charge_reference="req-1")
        second = await ledger.authorize_and_deduct("acct-1", 2, charge_reference="req-1")
        assert first.charge_reference == second.charge_reference == "req-1"
        assert await ledger.get_balance("acct-1") == 8.0

    @pytest.mark.asyncio
    async def test_reused_reference_with_different_amount(self, ledger):
        await fund(ledger, "acct-1", 10)
        await ledger.authorize_and_deduct("acct-1", 2, charge_reference="req-1")
        with pytest.raises(ChargeConflict):
            await ledger.authorize_and_deduct("acct-1", 3, charge_reference="req-1")

    @pytest.mark.asyncio
    async def test_failed_charge_write_returns_credits(self, ledger, store, db, monkeypatch):
        await fund(ledger, "acct-1", 10)

        async def timed_out(entry):
            raise asyncio.TimeoutError()

        monkeypatch.setattr(store, "insert_ledger_entry", timed_out)
        with pytest.raises(asyncio.TimeoutError):
            await ledger.authorize_and_deduct("acct-1", 5)

        account = await ledger.get_account("acct-1")
        assert account.credit_balance == 10.0
        assert account.total_spent == 0.0
        assert await db["credit_ledger"].count_documents({"reason": CHARGE}) == 0

    @pytest.mark.asyncio
    async def test_charge_write_that_landed_late_is_reversed(self, ledger, store, monkeypatch):
        await fund(ledger, "acct-1", 10)
        insert = store.insert_ledger_entry

        async def landed_then_timed_out(entry):
            await insert(entry)
            raise asyncio.TimeoutError()

        monkeypatch.setattr(store, "insert_ledger_entry", landed_then_timed_out)
        with pytest.raises(asyncio.TimeoutError):
            await ledger.authorize_and_deduct("acct-1", 5, charge_reference="req-9")
        monkeypatch.setattr(store, "insert_ledger_entry", insert)

        assert await ledger.get_balance("acct-1") == 10.0
        assert (await store.find_ledger_entry("req-9", CHARGE))["state"] == "reversed"
        with pytest.raises(ChargeNotRefundable):
            await ledger.refund_charge("req-9")
        with pytest.raises(ChargeConflict):
            await ledger.authorize_and_deduct("acct-1", 5, charge_reference="req-9")
        assert await ledger.get_balance("acct-1") == 10.0


class TestChargeLifecycle:

    @pytest.mark.asyncio
    async def test_refund_restores_balance_once(self, ledger):
        await fund(ledger, "acct-1", 10)
        charge = await ledger.authorize_and_deduct("acct-1", 4)

        first = await ledger.refund_charge(charge.charge_reference)
        second = await ledger.refund_charge(charge.charge_reference)

        assert first.applied is True
        assert first.external_reference == f"refund:{charge.charge_reference}"
        assert second.applied is False
        assert await ledger.get_balance("acct-1") == 10.0

    @pytest.mark.asyncio
    async def test_concurrent_refunds_credit_once(self, ledger):
        await fund(ledger, "acct-1", 10)
        charge = await ledger.authorize_and_deduct("acct-1", 4)
        await asyncio.gather(*[ledger.refund_charge(charge.charge_reference) for _ in range(5)])
        assert await ledger.get_balance("acct-1") == 10.0

    @pytest.mark.asyncio
    async def test_refund_reduces_total_spent(self, ledger):
        await fund(ledger, "acct-1", 10)
        charge = await ledger.authorize_and_deduct("acct-1", 4)
        await ledger.refund_charge(charge.charge_reference)
        account = await ledger.get_account("acct-1")
        assert account.total_spent == 0.0
        assert account.total_earned == 10.0

    @pytest.mark.asyncio
    async def test_committed_charge_not_refundable(self, ledger):
        await fund(ledger, "acct-1", 10)
        charge = await ledger.authorize_and_deduct("acct-1", 4)
        assert await ledger.commit(charge.charge_reference) is True
        with pytest.raises(ChargeNotRefundable):
            await ledger.refund_charge(charge.charge_reference)
        assert await ledger.get_balance("acct-1") == 6.0

    @pytest.mark.asyncio
    async def test_commit_is_idempotent(self, ledger):
        await fund(ledger, "acct-1", 10)
        charge = await ledger.authorize_and_deduct("acct-1", 4)
        assert await ledger.commit(charge.charge_reference) is True
        assert await ledger.commit(charge.charge_reference) is True

    @pytest.mark.asyncio
    async def test_commit_after_refund(self, ledger):
        await fund(ledger, "acct-1", 10)
        charge = await ledger.authorize_and_deduct("acct-1", 4)
        await ledger.refund_charge(charge.charge_reference)
        assert await ledger.commit(charge.charge_reference) is False

    @pytest.mark.asyncio
    async def test_unknown_charge(self, ledger):
        with pytest.raises(ChargeNotFound):
            await ledger.refund_charge("charge:nope")
        with pytest.raises(ChargeNotFound):
            await ledger.commit("charge:nope")


class TestIdempotentCredits:

    @pytest.mark.asyncio
    async def test_duplicate_reference_applies_once(self, ledger):
        await ledger.get_or_create_account("acct-1")
        first = await ledger.credit_with_idempotency("acct-1", 50, "inv_1", "purchase")
        second = await ledger.credit_with_idempotency("acct-1", 50, "inv_1", "purchase")
        assert first.applied is True
        assert first.new_balance == 50.0
        assert second.applied is False
        assert await ledger.get_balance("acct-1") == 50.0

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_apply_once(self, ledger):
        await ledger.get_or_create_account("acct-1")
        await asyncio.gather(*[
            ledger.credit_with_idempotency("acct-1", 20, "daily_grant:acct-1:2026-01-01", "daily_grant")
            for _ in range(25)
        ])
        assert await ledger.get_balance("acct-1") == 20.0

    @pytest.mark.asyncio
    async def test_same_reference_different_reason_both_apply(self, ledger):
        await ledger.get_or_create_account("acct-1")
        await ledger.credit_with_idempotency("acct-1", 5, "ref-1", "purchase")
        await ledger.credit_with_idempotency("acct-1", 5, "ref-1", "manual_adjustment")
        assert await ledger.get_balance("acct-1") == 10.0

    @pytest.mark.asyncio
    async def test_unknown_reason(self, ledger):
        await ledger.get_or_create_account("acct-1")
        with pytest.raises(ValueError):
            await ledger.credit_with_idempotency("acct-1", 5, "ref-1", "gift")

    @pytest.mark.asyncio
    async def test_unknown_account(self, ledger, db):
        with pytest.raises(AccountNotFound):
            await ledger.credit_with_idempotency("missing", 5, "ref-1", "purchase")
        assert await db["credit_ledger"].count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_credit_above_charge_ceiling_allowed(self, ledger):
        await ledger.get_or_create_account("acct-1")
        result = await ledger.credit_purchase("acct-1", 52000, "inv_big")
        assert result.external_reference == "purchase:inv_big"
        assert result.new_balance == 52000.0

    @pytest.mark.asyncio
    async def test_low_level_refund_with_reference(self, ledger):
        await ledger.get_or_create_account("acct-1")
        await ledger.refund("acct-1", 3, "support", reference="ticket-9")
        again = await ledger.refund("acct-1", 3, "support", reference="ticket-9")
        assert again.applied is False
        assert await ledger.get_balance("acct-1") == 3.0


class TestManualAdjustment:

    @pytest.mark.asyncio
    async def test_negative_adjustment_cannot_overdraw(self, ledger, store):
        await fund(ledger, "acct-1", 2)
        with pytest.raises(InsufficientCredits):
            await ledger.manual_adjustment("acct-1", -5, "adj-1", note="clawback")
        entry = await store.find_ledger_entry("adj-1", "manual_adjustment")
        assert entry["state"] == "declined"
        assert await ledger.get_balance("acct-1") == 2.0

    @pytest.mark.asyncio
    async def test_declined_adjustment_can_be_retried(self, ledger):
        await fund(ledger, "acct-1", 2)
        with pytest.raises(InsufficientCredits):
            await ledger.manual_adjustment("acct-1", -5, "adj-1")
        await ledger.credit_purchase("acct-1", 10, "inv_2")
        result = await ledger.manual_adjustment("acct-1", -5, "adj-1")
        assert result.applied is True
        assert await ledger.get_balance("acct-1") == 7.0

    @pytest.mark.asyncio
    async def test_positive_adjustment(self, ledger):
        await ledger.get_or_create_account("acct-1")
        await ledger.manual_adjustment("acct-1", 1.5, "adj-2")
        await ledger.manual_adjustment("acct-1", 1.5, "adj-2")
        assert await ledger.get_balance("acct-1") == 1.5


class TestLedgerHistory:

    @pytest.mark.asyncio
    async def test_entries_most_recent_first(self, ledger):
        await fund(ledger, "acct-1", 10)
        await ledger.authorize_and_deduct("acct-1", 1)
        await ledger.authorize_and_deduct("acct-1", 2)

        entries = await ledger.get_ledger("acct-1")
        assert len(entries) == 3
        timestamps = [e.timestamp for e in entries]
        assert timestamps == sorted(timestamps, reverse=True)
        assert sum(e.delta for e in entries) == pytest.approx(7.0)

    @pytest.mark.asyncio
    async def test_limit(self, ledger):
        await fund(ledger, "acct-1", 10)
        for _ in range(5):
            await ledger.authorize_and_deduct("acct-1", 1)
        assert len(await ledger.get_ledger("acct-1", limit=2)) == 2

    @pytest.mark.asyncio
    async def test_pay_per_call_entry_recorded_once(self, ledger):
        await ledger.get_or_create_account("acct-1")
        assert await ledger.record_pay_per_call("acct-1", "abc123", {"amount": "62500"}) is True
        assert await ledger.record_pay_per_call("acct-1", "abc123", {"amount": "62500"}) is False

        entries = await ledger.get_ledger("acct-1")
        assert len(entries) == 1
        assert entries[0].reason == "pay_per_call_bypass"
        assert entries[0].delta == 0.0
        assert await ledger.get_balance("acct-1") == 0.0


class TestReconcile:

    @pytest.mark.asyncio
    async def test_applies_stale_pending_entry(self, ledger, store):
        await ledger.get_or_create_account("acct-1")
        old = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
        await store.insert_ledger_entry({
            "account_id": "acct-1",
            "delta": 20.0,
            "delta_units": 200,
            "reason": "daily_grant",
            "external_reference": "daily_grant:acct-1:2026-01-01",
            "timestamp": old,
            "state": "pending",
            "details": {},
        })

        assert await ledger.reconcile_pending(older_than_seconds=300) == 1
        assert await ledger.get_balance("acct-1") == 20.0
        assert await ledger.reconcile_pending(older_than_seconds=300) == 0
        assert await ledger.get_balance("acct-1") == 20.0

    @pytest.mark.asyncio
    async def test_fresh_pending_left_alone(self, ledger, store):
        await ledger.get_or_create_account("acct-1")
        await store.insert_ledger_entry({
            "account_id": "acct-1",
            "delta": 5.0,
            "delta_units": 50,
            "reason": "purchase",
            "external_reference": "purchase:inv_fresh",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "state": "pending",
            "details": {},
        })
        assert await ledger.reconcile_pending(older_than_seconds=300) == 0
        assert await ledger.get_balance("acct-1") == 0.0

    @pytest.mark.asyncio
    async def test_entry_abandoned_after_insert_is_applied(self, ledger, store):
        """A credit whose writer stopped right after the insert."""
        await ledger.get_or_create_account("acct-1")
        await store.insert_ledger_entry({
            "account_id": "acct-1",
            "delta": 5.0,
            "delta_units": 50,
            "reason": "purchase",
            "external_reference": "purchase:inv_3",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "state": "pending",
            "details": {},
        })
        await ledger.reconcile_pending(older_than_seconds=0)
        assert await ledger.get_balance("acct-1") == 5.0
