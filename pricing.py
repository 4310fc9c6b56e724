"""
pricing.py
Pure price computation: interval multipliers, discounts, proration.

Amounts stay as full-precision Decimals; rounding to cents happens only in
to_minor_units()/round_money() when money actually moves.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from errors import InvalidInterval, InvalidPlan, UnsupportedExtension
from models import (
    EXTENSION_INTERVALS,
    INTERVAL_MULTIPLIER,
    AddonService,
    BillingInterval,
    Discount,
    Plan,
)

CENT = Decimal("0.01")
HUNDRED = Decimal(100)

# Labels the old booking records used for the same intervals
_INTERVAL_ALIASES = {
    "3 Months": BillingInterval.QUARTERLY,
}


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def parse_interval(value) -> BillingInterval:
    if isinstance(value, BillingInterval):
        return value
    if isinstance(value, str):
        if value in _INTERVAL_ALIASES:
            return _INTERVAL_ALIASES[value]
        for interval in BillingInterval:
            if value == interval.value or value.lower() == interval.value.lower():
                return interval
    raise InvalidInterval(f"Unrecognized billing interval: {value!r}", context={"interval": str(value)})


def interval_for_months(months: int) -> BillingInterval:
    try:
        return EXTENSION_INTERVALS[int(months)]
    except (KeyError, TypeError, ValueError):
        raise UnsupportedExtension(
            f"Extension of {months} months is not supported.",
            context={"months": months, "allowed": sorted(EXTENSION_INTERVALS)},
        ) from None


def select_discount(discounts: Iterable[Discount], interval: BillingInterval) -> Discount | None:
    """First active discount for the interval, if any."""
    for d in discounts:
        if d.active and d.interval == interval:
            return d
    return None


def apply_discount(amount: Decimal, discount: Discount | None, interval: BillingInterval) -> Decimal:
    if discount is None or not discount.active or discount.interval != interval:
        return amount
    pct = to_decimal(discount.percentage)
    if pct < 0 or pct > HUNDRED:
        raise InvalidPlan(f"Discount percentage out of range: {pct}", context={"discount": discount.name})
    return amount * (1 - pct / HUNDRED)


def compute_total(
    plan: Plan,
    addons: Iterable[AddonService],
    interval: BillingInterval | str,
    discount: Discount | None = None,
) -> Decimal:
    """
    Price of a membership configuration for one billing interval.

    (base_price + sum(addon prices)) * multiplier, less a matching discount.
    """
    interval = parse_interval(interval)
    multiplier = INTERVAL_MULTIPLIER.get(interval)
    if multiplier is None:
        raise InvalidInterval(f"No multiplier for interval {interval.value}")

    base_price = to_decimal(plan.base_price)
    if base_price <= 0:
        raise InvalidPlan(f"Plan '{plan.name}' has a non-positive base price.", context={"plan_id": plan.id})

    base = base_price + sum((to_decimal(a.price) for a in addons), Decimal(0))
    return apply_discount(base * multiplier, discount, interval)


def extension_cost(plan: Plan, months: int, discount: Discount | None = None) -> Decimal:
    interval = interval_for_months(months)
    base_price = to_decimal(plan.base_price)
    if base_price <= 0:
        raise InvalidPlan(f"Plan '{plan.name}' has a non-positive base price.", context={"plan_id": plan.id})
    return apply_discount(base_price * int(months), discount, interval)


def prorate(amount: Decimal, days_remaining: int, total_days: int) -> Decimal:
    if total_days <= 0:
        return Decimal(0)
    return to_decimal(amount) * Decimal(max(0, days_remaining)) / Decimal(total_days)


def round_money(amount: Decimal) -> Decimal:
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Cents for the payment gateway."""
    return int(round_money(amount) * 100)
