"""
Pricing Calculator

Single canonical credit price for a unit of work:

    per_unit = base_rate[unit_kind] * (batch_premium if quantity > 1 else 1)
    total    = per_unit * quantity
    total    = total * external_agent_markup   (externalAgent clients only)
    credits  = ceil(total, 0.1)

No I/O, no shared state. Arithmetic runs on Decimal so rounding boundaries
are exact - the service must never under-charge because of float error.
"""

import math
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR
from typing import Dict, Optional

from .config import (
    BASE_CREDIT_RATES,
    PRICING_MULTIPLIERS,
    QUANTITY_LIMITS,
    CLIENT_CLASSES,
    USD_PER_CREDIT,
    PURCHASE_CREDITS_PER_USD,
    PURCHASE_VOLUME_TIERS,
    PURCHASE_HOLDER_BONUS,
    PAY_PER_CALL,
)
from .errors import InvalidPricingInput
from .models import PriceQuote

TENTH = Decimal("0.1")


def _dec(value) -> Decimal:
    return Decimal(str(value))


def ceil_to_tenth(value: Decimal) -> Decimal:
    """Round up to one decimal place."""
    return (value / TENTH).to_integral_value(rounding=ROUND_CEILING) * TENTH


class PricingCalculator:
    """Computes credit cost from (unit kind, quantity, client class)."""

    def __init__(
        self,
        rates: Optional[Dict[str, float]] = None,
        multipliers: Optional[Dict[str, float]] = None,
    ):
        self.rates = dict(rates if rates is not None else BASE_CREDIT_RATES)
        merged = dict(PRICING_MULTIPLIERS)
        if multipliers:
            merged.update(multipliers)
        self.batch_premium = _dec(merged["batch_premium"])
        self.agent_markup = _dec(merged["external_agent_markup"])
        self.pay_per_call_markup = _dec(merged["pay_per_call_markup"])

    def _validate(self, unit_kind: str, quantity: int, client_class: str) -> None:
        if unit_kind not in self.rates:
            raise InvalidPricingInput(f"Unknown unit kind: {unit_kind}", unit_kind=unit_kind)

        # bool is an int subclass; reject it explicitly
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise InvalidPricingInput("Quantity must be an integer", quantity=str(quantity))

        if not QUANTITY_LIMITS["min"] <= quantity <= QUANTITY_LIMITS["max"]:
            raise InvalidPricingInput(
                f"Quantity must be between {QUANTITY_LIMITS['min']} and {QUANTITY_LIMITS['max']}",
                quantity=quantity,
            )

        if client_class not in CLIENT_CLASSES:
            raise InvalidPricingInput(f"Unknown client class: {client_class}", client_class=client_class)

    def price_decimal(self, unit_kind: str, quantity: int = 1, client_class: str = "standard") -> Decimal:
        self._validate(unit_kind, quantity, client_class)

        per_unit = _dec(self.rates[unit_kind])
        if quantity > 1:
            per_unit = per_unit * self.batch_premium

        total = per_unit * quantity

        if client_class == "externalAgent":
            total = total * self.agent_markup

        return ceil_to_tenth(total)

    def price(self, unit_kind: str, quantity: int = 1, client_class: str = "standard") -> float:
        """Credit cost for the work, rounded up to one decimal."""
        return float(self.price_decimal(unit_kind, quantity, client_class))

    def quote(self, unit_kind: str, quantity: int = 1, client_class: str = "standard") -> PriceQuote:
        return PriceQuote(
            unit_kind=unit_kind,
            quantity=quantity,
            client_class=client_class,
            credits=self.price(unit_kind, quantity, client_class),
        )

    def pay_per_call_amount(self, unit_kind: str, quantity: int = 1) -> int:
        """
        Facilitator price for the work in the asset's smallest unit.

        Starts from the standard-class credit price, converts to USD and
        applies the pay-per-call markup. Rounded up to a whole smallest unit.
        """
        credits = self.price_decimal(unit_kind, quantity, "standard")
        usd = credits * _dec(USD_PER_CREDIT) * self.pay_per_call_markup
        scale = Decimal(10) ** PAY_PER_CALL["asset_decimals"]
        return int((usd * scale).to_integral_value(rounding=ROUND_CEILING))

    @staticmethod
    def credits_for_purchase(amount_usd: float, is_holder: bool = False) -> int:
        """Credits granted for a dollar purchase, with volume and holder bonuses."""
        if not isinstance(amount_usd, (int, float)) or isinstance(amount_usd, bool):
            raise InvalidPricingInput("Purchase amount must be a number")
        if not math.isfinite(amount_usd) or amount_usd <= 0:
            raise InvalidPricingInput("Purchase amount must be positive", amount_usd=amount_usd)

        scaling = Decimal(1)
        for minimum, multiplier in PURCHASE_VOLUME_TIERS:
            if amount_usd >= minimum:
                scaling = _dec(multiplier)
                break

        holder = _dec(PURCHASE_HOLDER_BONUS) if is_holder else Decimal(1)
        credits = _dec(amount_usd) * PURCHASE_CREDITS_PER_USD * scaling * holder
        return int(credits.to_integral_value(rounding=ROUND_FLOOR))
