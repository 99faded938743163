"""
Credit Engine Data Models

Pydantic models for credit engine operations.
Account and ledger models mirror the documents stored in MongoDB;
the rest are request-scoped results passed between components.
"""

from pydantic import BaseModel, Field
from typing import Optional, Literal, Dict, Any


LedgerReason = Literal[
    "purchase",
    "daily_grant",
    "generation_charge",
    "refund",
    "manual_adjustment",
    "pay_per_call_bypass",
]

ClientClass = Literal["standard", "externalAgent"]


# ==================== ACCOUNT MODELS ====================

class HolderStatusHint(BaseModel):
    """Advisory cached holder status. Never trusted for decisions."""
    has_access: bool = False
    source: str = "none"
    updated_at: Optional[str] = None


class Account(BaseModel):
    """Credit account keyed by wallet address, email-derived id or API-key id"""
    account_id: str
    source: Literal["wallet", "email", "api-key"] = "wallet"
    wallet_address: Optional[str] = None
    credit_balance: float = 0.0
    total_earned: float = 0.0
    total_spent: float = 0.0
    last_daily_grant_date: Optional[str] = None  # YYYY-MM-DD, UTC
    holder_status_hint: Optional[HolderStatusHint] = None
    tier: Optional[str] = None
    rate_limit_per_minute: Optional[int] = None
    rate_limit_per_day: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# ==================== LEDGER MODELS ====================

class LedgerEntry(BaseModel):
    """Immutable append record for a balance-affecting event"""
    account_id: str
    delta: float
    reason: LedgerReason
    external_reference: str
    timestamp: str  # ISO datetime string
    state: Literal[
        "pending", "applying", "applied", "declined",
        "reserved", "committed", "refunded", "reversed",
    ] = "applied"
    details: Optional[Dict[str, Any]] = None


class ChargeResult(BaseModel):
    """Result of a successful authorize-and-deduct"""
    ok: bool = True
    account_id: str
    charge_reference: str
    credits_charged: float
    new_balance: float


class CreditResult(BaseModel):
    """Result of an idempotent credit. applied=False means already applied."""
    applied: bool
    account_id: str
    external_reference: str
    amount: float
    new_balance: Optional[float] = None


# ==================== ENTITLEMENT MODELS ====================

class EntitlementStatus(BaseModel):
    """Holder status for an address"""
    address: str = ""
    has_access: bool = False
    balance: float = 0.0
    source: str = "none"  # token | collection:<name> | gate_disabled | none
    required_balance: float = 0.0
    chain_id: str = ""
    resolved_at: Optional[float] = None  # epoch seconds


class GrantResult(BaseModel):
    """Result of a daily grant check"""
    granted: bool
    amount: float = 0.0
    grant_date: str
    reason: str = ""
    new_balance: Optional[float] = None


# ==================== PRICING MODELS ====================

class WorkDescriptor(BaseModel):
    """Unit of billable work"""
    unit_kind: str
    quantity: int = 1


class PriceQuote(BaseModel):
    unit_kind: str
    quantity: int
    client_class: str
    credits: float


# ==================== RATE LIMIT MODELS ====================

class RateCounter(BaseModel):
    count: int = 0
    window_start: float = 0.0


class RateLimitResult(BaseModel):
    allowed: bool
    tier: str
    limit: int = 0
    remaining: int = 0
    window: Optional[str] = None
    retry_after_seconds: int = 0
    upgrade_hint: Optional[str] = None
    degraded: bool = False


# ==================== PAY PER CALL MODELS ====================

class PaymentRequirements(BaseModel):
    """What the caller must pay, in the facilitator's representation"""
    scheme: str = "exact"
    network: str
    asset: str
    amount: str  # smallest-unit integer as a string
    pay_to: str = Field(..., alias="payTo")
    max_timeout_seconds: int = Field(60, alias="maxTimeoutSeconds")
    resource: Optional[str] = None
    description: Optional[str] = None

    model_config = {"populate_by_name": True}

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class VerifyResult(BaseModel):
    valid: bool
    reason: Optional[str] = None
    payer: Optional[str] = None


class SettleResult(BaseModel):
    success: bool
    settlement_ref: Optional[str] = None
    reason: Optional[str] = None
    payer: Optional[str] = None
    already_settled: bool = False


class PayPerCallDecision(BaseModel):
    """Outcome of evaluating a request for pay-per-call"""
    bypass: bool
    activated: bool = False
    failure_reason: Optional[str] = None
    payer: Optional[str] = None
    proof_hash: Optional[str] = None


# ==================== GUARD MODELS ====================

class ReservationResult(BaseModel):
    """Result of check-and-reserve for a billable request"""
    reserved: bool
    account_id: Optional[str] = None
    credits_charged: float = 0.0
    bypass_active: bool = False
    charge_reference: Optional[str] = None
    remaining_balance: Optional[float] = None
    daily_grant: Optional[GrantResult] = None


class CreditEstimate(BaseModel):
    unit_kind: str
    quantity: int
    estimated_credits: float
    current_balance: float
    sufficient_credits: bool
