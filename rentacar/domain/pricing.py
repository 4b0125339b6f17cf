"""
Rental Pricing Engine
=====================

Formula
-------
Price = Days x Price_Per_Day x (1 - Duration_Discount)

* **Duration_Discount**: 0 % up to 3 days, 5 % for 4-10 days,
  10 % for 11-20 days, 15 % beyond 20 days.

The result is rounded half-up to 0.01.  Internally everything runs on
``Decimal`` so tier boundaries never drift by a float ulp.

Money conversion
----------------
The payment gateway speaks integer "smallest units" (millimes for TND).
``to_smallest_unit`` applies a per-currency factor from configuration and
is used on both payment initiation and payment verification.

Complexity: O(1) per call.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping, Optional

from .errors import ValidationError

CENT = Decimal("0.01")


@dataclass(frozen=True)
class DiscountTier:
    min_days: int
    max_days: Optional[int]  # None = open-ended
    percent: int

    def applies_to(self, days: int) -> bool:
        if days < self.min_days:
            return False
        return self.max_days is None or days <= self.max_days


DEFAULT_TIERS: tuple[DiscountTier, ...] = (
    DiscountTier(4, 10, 5),
    DiscountTier(11, 20, 10),
    DiscountTier(21, None, 15),
)


def _decimal(value: float | int | Decimal) -> Decimal:
    # str() keeps 0.1 as 0.1 instead of its binary expansion
    return value if isinstance(value, Decimal) else Decimal(str(value))


class RentalPricingEngine:
    """High-level API used by the reservation and prolongation services."""

    def __init__(self, tiers: tuple[DiscountTier, ...] = DEFAULT_TIERS):
        self.tiers = tiers

    def discount_percent(self, days: int) -> int:
        for tier in self.tiers:
            if tier.applies_to(days):
                return tier.percent
        return 0

    def total_price(self, days: int, price_per_day: float) -> float:
        if days <= 0:
            raise ValidationError("Rental duration must be positive")
        if price_per_day <= 0:
            raise ValidationError("Price per day must be positive")
        base = _decimal(price_per_day) * days
        discounted = base * (100 - self.discount_percent(days)) / 100
        return float(discounted.quantize(CENT, rounding=ROUND_HALF_UP))


def payment_amount(total_price: float, percentage: int) -> Decimal:
    """Major-unit amount due now for a *percentage* deposit."""
    return _decimal(total_price) * percentage / 100


def to_smallest_unit(
    amount: Decimal | float, currency: str, units: Mapping[str, int]
) -> int:
    """Convert a major-unit amount into the gateway's integer unit."""
    factor = units.get(currency)
    if factor is None:
        raise ValidationError(f"Unsupported currency: {currency}")
    return int((_decimal(amount) * factor).quantize(Decimal(1), rounding=ROUND_HALF_UP))
