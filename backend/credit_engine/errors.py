"""
Credit Engine Errors

Every user-visible failure carries a stable error_code, an HTTP status and a
structured detail dict so clients can self-correct without parsing text.
Idempotent no-ops are NOT errors - they return applied=False.
"""

from typing import Any, Dict, Optional

from .config import ERROR_CODES


class BillingError(Exception):
    """Base class for errors surfaced to callers of the engine."""

    error_code = "BILLING_ERROR"
    http_status = 400

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or ERROR_CODES.get(self.error_code, self.error_code)
        self.extra = extra
        super().__init__(self.message)

    def to_detail(self) -> Dict[str, Any]:
        detail = {"error_code": self.error_code, "message": self.message}
        detail.update(self.extra)
        return detail


class InsufficientCredits(BillingError):
    """Balance does not cover the requested charge. Never retried."""

    error_code = "INSUFFICIENT_CREDITS"
    http_status = 402

    def __init__(self, required: float, available: float):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits. You have {available} credits but need {required}.",
            credits_required=required,
            credits_available=available,
            shortfall=round(required - available, 1),
        )


class InvalidPricingInput(BillingError):
    """Malformed unit kind, quantity or client class."""

    error_code = "INVALID_PRICING_INPUT"
    http_status = 400


class InvalidCreditAmount(BillingError):
    """Amount is not finite, not positive, too precise or above the charge ceiling."""

    error_code = "INVALID_CREDIT_AMOUNT"
    http_status = 400


class AccountNotFound(BillingError):
    error_code = "ACCOUNT_NOT_FOUND"
    http_status = 404


class ChargeNotFound(BillingError):
    error_code = "CHARGE_NOT_FOUND"
    http_status = 404


class ChargeNotRefundable(BillingError):
    error_code = "CHARGE_NOT_REFUNDABLE"
    http_status = 409


class ChargeConflict(BillingError):
    """Same charge reference is already in flight with different state."""

    error_code = "CHARGE_CONFLICT"
    http_status = 409


class PaymentVerificationFailed(BillingError):
    error_code = "PAYMENT_VERIFICATION_FAILED"
    http_status = 402

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message, reason=reason)


class PaymentSettlementFailed(BillingError):
    error_code = "PAYMENT_SETTLEMENT_FAILED"
    http_status = 402

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message, reason=reason)


class RateLimitExceeded(BillingError):
    error_code = "RATE_LIMIT"
    http_status = 429

    def __init__(self, retry_after_seconds: int, tier: str, limit: int, window: str,
                 upgrade_hint: Optional[str] = None):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Rate limit exceeded. Please wait {retry_after_seconds} seconds.",
            retry_after_seconds=retry_after_seconds,
            tier=tier,
            limit=limit,
            window=window,
            upgrade_hint=upgrade_hint,
        )


# ==================== INTERNAL ERRORS ====================
# Never surfaced verbatim to callers.

class EntitlementResolutionFailed(Exception):
    """External balance lookup failed; treated as no access."""
    pass


class SharedStoreUnavailable(Exception):
    """Shared counter/cache store could not be reached."""
    pass


class FacilitatorError(Exception):
    """Transport-level failure talking to the payment facilitator."""
    pass
