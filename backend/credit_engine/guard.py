"""
Billing Guard - Pre-execution credit guard

Runs, for every billable request:
1. Pricing validation (rejects bad input before any mutation)
2. Rate limiting (per tier, shared counters with local fallback)
3. Entitlement resolution + daily grant
4. Pay-per-call gate (a verified payment skips the ledger)
5. Atomic credit deduction

After the work: complete() commits the charge or settles the payment;
when the work fails an unsettled payment claim is released, and on a
server-side failure the charge is refunded by its reference.

IMPORTANT: This guard is the ONLY place where billable work is gated.
"""

import asyncio
import logging
import os
from functools import wraps
from typing import Any, Callable, Dict, Mapping, Optional, Union

from fastapi import HTTPException
from pymongo.errors import PyMongoError

from .chain import Web3ChainBalanceSource
from .daily_grant import DailyGrantEngine
from .entitlement_cache import EntitlementCache
from .errors import (
    BillingError,
    PaymentVerificationFailed,
    RateLimitExceeded,
)
from .holder_resolver import HolderResolver
from .ledger import CreditLedger
from .models import (
    CreditEstimate,
    CreditResult,
    EntitlementStatus,
    GrantResult,
    ReservationResult,
    SettleResult,
    WorkDescriptor,
)
from .pay_per_call import FacilitatorClient, PayPerCallGate
from .pricing import PricingCalculator
from .rate_limiter import RateLimiter
from .shared_store import FallbackSharedStore, RedisSharedStore
from .store import AccountStore, short_id
from .usage import UsageCounter

logger = logging.getLogger(__name__)


class BillingGuard:
    """
    Credit guard for billable work.

    Usage:
        reservation = await guard.check_and_reserve_credits(
            account_id, WorkDescriptor(unit_kind="flux-2", quantity=2),
            request_state=request.state, headers=request.headers,
        )
        try:
            result = await generate(...)
        except Exception as e:
            await guard.abandon(reservation, request.state, str(e))
            raise
        await guard.complete(reservation, request.state)
    """

    def __init__(
        self,
        ledger: CreditLedger,
        resolver: HolderResolver,
        grants: DailyGrantEngine,
        gate: PayPerCallGate,
        pricing: PricingCalculator,
        limiter: RateLimiter,
        usage: Optional[UsageCounter] = None,
    ):
        self.ledger = ledger
        self.resolver = resolver
        self.grants = grants
        self.gate = gate
        self.pricing = pricing
        self.limiter = limiter
        self.usage = usage

    async def estimate(self, account_id: str, work: WorkDescriptor,
                       client_class: str = "standard") -> CreditEstimate:
        """Credit cost for the work without deducting anything."""
        credits = self.pricing.price(work.unit_kind, work.quantity, client_class)
        balance = await self.ledger.get_balance(account_id)

        return CreditEstimate(
            unit_kind=work.unit_kind,
            quantity=work.quantity,
            estimated_credits=credits,
            current_balance=balance,
            sufficient_credits=balance >= credits,
        )

    async def check_and_reserve_credits(
        self,
        account_id: Optional[str],
        work: WorkDescriptor,
        client_class: str = "standard",
        request_state: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        identity: Optional[str] = None,
        wallet_address: Optional[str] = None,
        source: str = "wallet",
    ) -> ReservationResult:
        """
        Full guard check. Returns a reservation or raises a BillingError.

        account_id may be None for anonymous pay-per-call callers; without
        a valid payment those requests are rejected.
        """
        headers = headers or {}

        # 1. Price first: invalid input never reaches the ledger
        credits = self.pricing.price(work.unit_kind, work.quantity, client_class)

        account = None
        if account_id:
            account = await self.ledger.get_or_create_account(account_id, wallet_address, source)

        # 2. Rate limit
        await self.limiter.enforce(identity or account_id or "anonymous", account)

        # 3. Entitlement + daily grant
        grant: Optional[GrantResult] = None
        address = wallet_address or (account.wallet_address if account else None)
        if account is not None and address:
            status = await self.resolver.resolve(address)
            await self.ledger.set_holder_hint(account_id, status.has_access, status.source)
            grant = await self.grants.check_and_grant(account_id, address, status=status)

        # 4. Pay-per-call
        if request_state is not None:
            decision = await self.gate.evaluate(headers, request_state, work)
            if decision.bypass:
                return ReservationResult(
                    reserved=True,
                    account_id=account_id,
                    bypass_active=True,
                    daily_grant=grant,
                )
            if decision.activated and account is None:
                raise PaymentVerificationFailed(decision.failure_reason or "invalid_proof")

        if account is None:
            raise PaymentVerificationFailed("payment_required")

        # 5. Deduct
        charge = await self.ledger.authorize_and_deduct(
            account_id,
            credits,
            details={"unit_kind": work.unit_kind, "quantity": work.quantity, "client_class": client_class},
        )

        if self.usage is not None:
            await self.usage.record(account_id, work.unit_kind, work.quantity)

        return ReservationResult(
            reserved=True,
            account_id=account_id,
            credits_charged=charge.credits_charged,
            charge_reference=charge.charge_reference,
            remaining_balance=charge.new_balance,
            daily_grant=grant,
        )

    async def complete(self, reservation: ReservationResult, request_state: Any = None) -> Optional[SettleResult]:
        """Commit the charge, or settle the payment for a bypassed request."""
        if reservation.bypass_active:
            return await self.gate.settle(request_state, reservation.account_id)

        if reservation.charge_reference:
            await self.ledger.commit(reservation.charge_reference)
        return None

    async def refund_credits(self, charge_reference: str, reason: str = "System error") -> CreditResult:
        """
        Refund a reserved charge (system failures only).

        Idempotent on the charge reference.
        """
        result = await self.ledger.refund_charge(charge_reference, reason)
        if result.applied:
            logger.info(f"Refunded {result.amount} credits for {charge_reference}: {reason}")
        return result

    async def abandon(self, reservation: ReservationResult, request_state: Any = None,
                      reason: str = "System error", refund: bool = True) -> None:
        """
        Undo a reservation after the work failed.

        A bypassed request gives its payment claim back; a charge is refunded
        when refund is set. Failures here are logged and never replace the
        error that caused the work to fail.
        """
        try:
            if reservation.bypass_active:
                await self.gate.release(request_state)
            elif refund and reservation.charge_reference:
                await self.refund_credits(reservation.charge_reference, reason)
        except (BillingError, PyMongoError, asyncio.TimeoutError) as e:
            logger.error(
                f"Could not undo reservation for {short_id(reservation.account_id)} "
                f"(ref={reservation.charge_reference}): {e}"
            )

    async def get_entitlement_status(self, account_id: str) -> EntitlementStatus:
        account = await self.ledger.get_account(account_id)
        if not account.wallet_address:
            return EntitlementStatus(address="", has_access=False, source="none")

        status = await self.resolver.resolve(account.wallet_address)
        await self.ledger.set_holder_hint(account_id, status.has_access, status.source)
        return status


def _http_error(error: BillingError, guard: Optional[BillingGuard] = None,
                work: Optional[WorkDescriptor] = None) -> HTTPException:
    headers: Dict[str, str] = {}
    if isinstance(error, RateLimitExceeded):
        headers["Retry-After"] = str(error.retry_after_seconds)
    # Every 402 offers pay-per-call as the alternative
    if error.http_status == 402 and guard and work:
        headers["Payment-Required"] = guard.gate.build_payment_required(work)
    return HTTPException(status_code=error.http_status, detail=error.to_detail(), headers=headers or None)


def billing_guarded(
    unit_kind: Union[str, Callable[[Dict[str, Any]], str]],
    client_class: Optional[str] = None,
    quantity: Optional[Callable[[Dict[str, Any]], Any]] = None,
):
    """
    Decorator for billable route handlers.

    Automatically handles:
    - Credit check and deduction (or pay-per-call verification)
    - Structured 402/429/400 responses for billing errors
    - Commit or settlement after success
    - Refund on 5xx errors, release of an unsettled payment on any error

    Usage:
        @router.post("/generate/image")
        @billing_guarded("flux-2", quantity=lambda kw: kw["body"].num_images)
        async def generate(request: Request, body: ImageRequest, user: dict = Depends(get_current_user)):
            ...

    The handler must take 'request'. 'user' (with 'id' or 'account_id')
    is optional for pay-per-call routes. The batch size comes from the
    quantity extractor, else from a 'quantity' keyword argument, else 1.
    It must be an int; anything else is rejected with a 400 before any
    charge. The guard is read from request.app.state.billing_guard.
    """
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            request = kwargs.get("request")
            if request is None:
                raise HTTPException(status_code=500, detail="Billing guard requires the request")

            guard: BillingGuard = request.app.state.billing_guard
            user = kwargs.get("user") or {}

            account_id = user.get("account_id") or user.get("id")
            kind = unit_kind(kwargs) if callable(unit_kind) else unit_kind
            count = quantity(kwargs) if quantity is not None else kwargs.get("quantity")
            if count is None:
                count = 1
            klass = client_class or user.get("client_class") or "standard"
            identity = account_id or (request.client.host if request.client else None)

            work: Optional[WorkDescriptor] = None
            try:
                # Price the raw value so a float or string batch size is rejected, not coerced
                guard.pricing.price(kind, count, klass)
                work = WorkDescriptor(unit_kind=kind, quantity=count)
                reservation = await guard.check_and_reserve_credits(
                    account_id,
                    work,
                    client_class=klass,
                    request_state=request.state,
                    headers=request.headers,
                    identity=identity,
                    wallet_address=user.get("wallet_address"),
                    source=user.get("source", "wallet"),
                )
            except BillingError as e:
                raise _http_error(e, guard, work)

            try:
                response = await func(*args, **kwargs)
            except Exception as e:
                status_code = getattr(e, "status_code", 500)
                await guard.abandon(reservation, request.state, str(e), refund=status_code >= 500)
                raise

            try:
                settlement = await guard.complete(reservation, request.state)
            except BillingError as e:
                raise _http_error(e, guard, work)

            if settlement is not None:
                request.state.payment_response = guard.gate.payment_response_header(settlement)
                logger.info(f"Pay-per-call request for {short_id(account_id)} settled")

            return response

        return wrapper
    return decorator


def create_billing_guard(
    db,
    redis_client=None,
    chain=None,
    facilitator: Optional[FacilitatorClient] = None,
) -> BillingGuard:
    """
    Wire the engine once at process start.

    redis_client=None runs the shared store on the local fallback only.
    """
    store = AccountStore(db)
    shared = FallbackSharedStore(RedisSharedStore(redis_client) if redis_client is not None else None)

    ledger = CreditLedger(store)
    pricing = PricingCalculator()
    resolver = HolderResolver(chain or Web3ChainBalanceSource(), EntitlementCache(shared))

    if facilitator is None:
        facilitator = FacilitatorClient(
            api_key_id=os.environ.get("CDP_API_KEY_ID"),
            api_key_secret=os.environ.get("CDP_API_KEY_SECRET"),
        )

    return BillingGuard(
        ledger=ledger,
        resolver=resolver,
        grants=DailyGrantEngine(ledger, resolver),
        gate=PayPerCallGate(facilitator, pricing, store, ledger),
        pricing=pricing,
        limiter=RateLimiter(shared),
        usage=UsageCounter(shared),
    )
