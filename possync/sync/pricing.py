"""
Order total computation.

    subtotal = sum(unit_price * quantity)
    discount = percentage of subtotal or absolute amount, capped at subtotal
    tax      = vat_rate * (subtotal - discount)
    excise   = per-category rate on each line's share of the discounted subtotal
    total    = subtotal - discount + tax + excise

Arithmetic is done in Decimal and rounded half-up to 2 places.
"""

import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from ..config.app_config import LoyaltyConfig, TaxConfig
from ..errors import ValidationError
from ..models import LineItem

CENT = Decimal("0.01")


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class Discount:
    amount: float = 0.0
    is_percentage: bool = False

    @classmethod
    def from_value(cls, value) -> 'Discount':
        """Accept None, a number (absolute), or {'type': 'percentage'|'fixed', 'value': n}."""
        if value is None:
            return cls()
        if isinstance(value, Discount):
            return value
        if isinstance(value, (int, float, Decimal)):
            return cls(amount=float(value))
        if isinstance(value, dict):
            kind = value.get("type", "fixed")
            if kind not in ("percentage", "fixed", "fixed_amount"):
                raise ValidationError(f"Unknown discount type: {kind!r}")
            return cls(amount=float(value.get("value", 0)), is_percentage=kind == "percentage")
        raise ValidationError(f"Unsupported discount value: {value!r}")


@dataclass
class Totals:
    subtotal: float
    discount: float
    tax_amount: float
    excise_amount: float
    total: float


def compute_totals(
    line_items: Iterable[LineItem],
    discount: Optional[Discount] = None,
    tax: Optional[TaxConfig] = None,
) -> Totals:
    tax = tax or TaxConfig()
    discount = discount or Discount()
    items = list(line_items)

    if discount.amount < 0:
        raise ValidationError("Discount cannot be negative")
    if discount.is_percentage and discount.amount > 100:
        raise ValidationError("Percentage discount cannot exceed 100")

    line_totals = [Decimal(str(item.unit_price)) * item.quantity for item in items]
    subtotal = sum(line_totals, Decimal("0"))

    if discount.is_percentage:
        discount_amount = subtotal * Decimal(str(discount.amount)) / Decimal("100")
    else:
        discount_amount = Decimal(str(discount.amount))
    discount_amount = min(discount_amount, subtotal)
    taxable = subtotal - discount_amount

    tax_amount = taxable * Decimal(str(tax.vat_rate))

    excise_amount = Decimal("0")
    if subtotal > 0 and tax.excise_rates:
        for item, line_total in zip(items, line_totals):
            rate = tax.excise_rates.get(item.category)
            if rate:
                share = taxable * line_total / subtotal
                excise_amount += share * Decimal(str(rate))

    subtotal_m = _money(subtotal)
    discount_m = _money(discount_amount)
    tax_m = _money(tax_amount)
    excise_m = _money(excise_amount)
    total_m = subtotal_m - discount_m + tax_m + excise_m

    return Totals(
        subtotal=float(subtotal_m),
        discount=float(discount_m),
        tax_amount=float(tax_m),
        excise_amount=float(excise_m),
        total=float(max(total_m, Decimal("0"))),
    )


def loyalty_points_for(total: float, loyalty: Optional[LoyaltyConfig] = None) -> int:
    loyalty = loyalty or LoyaltyConfig()
    if total < loyalty.minimum_order:
        return 0
    return int(math.floor(total * loyalty.points_per_unit))
