from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal, TypeVar

BillingCycle = Literal["weekly", "monthly", "quarterly", "yearly"]

BILLING_CYCLES: tuple[str, ...] = ("weekly", "monthly", "quarterly", "yearly")

_CYCLE_MONTHS = {
    "monthly": 1,
    "quarterly": 3,
    "yearly": 12,
}

# Normalises a per-cycle price to a per-month amount.
MONTHLY_FACTOR: dict[str, Decimal] = {
    "weekly": Decimal(52) / Decimal(12),
    "monthly": Decimal(1),
    "quarterly": Decimal(1) / Decimal(3),
    "yearly": Decimal(1) / Decimal(12),
}

_CENT = Decimal("0.01")

_T = TypeVar("_T", date, datetime)


def next_period_end(start: _T, cycle: str) -> _T:
    """Return the end of the billing period beginning at ``start``.

    Calendar months are added with end-of-month clamping, so a monthly period
    starting on January 31st ends on the last day of February. Works for both
    ``date`` and ``datetime`` values and keeps the time component unchanged.
    """
    if cycle == "weekly":
        return start + timedelta(days=7)
    months = _CYCLE_MONTHS.get(cycle)
    if months is None:
        raise ValueError(f"unknown billing cycle: {cycle}")
    return add_months(start, months)


def add_months(base: _T, months: int) -> _T:
    month_index = base.month - 1 + months
    year = base.year + (month_index // 12)
    month = month_index % 12 + 1
    day = min(base.day, calendar.monthrange(year, month)[1])
    return base.replace(year=year, month=month, day=day)


def period_days(start: datetime, end: datetime) -> int:
    return max((end.date() - start.date()).days, 0)


def remaining_days(now: datetime, end: datetime) -> int:
    return max((end.date() - now.date()).days, 0)


def prorate(amount: Decimal, remaining: int, total: int) -> Decimal:
    """Scale ``amount`` by ``remaining / total`` whole days, rounded to cents."""
    if total <= 0 or remaining <= 0:
        return Decimal("0.00")
    remaining = min(remaining, total)
    return q_money(Decimal(amount) * Decimal(remaining) / Decimal(total))


def apply_discount(price: Decimal, discount_percentage: Decimal | None) -> Decimal:
    if not discount_percentage:
        return q_money(price)
    return q_money(Decimal(price) * (Decimal(100) - Decimal(discount_percentage)) / Decimal(100))


def convert_cycle_price(amount: Decimal, from_cycle: str, to_cycle: str) -> Decimal:
    """Re-express a per-``from_cycle`` price as the equivalent per-``to_cycle`` amount."""
    if from_cycle == to_cycle:
        return q_money(amount)
    try:
        monthly = Decimal(amount) * MONTHLY_FACTOR[from_cycle]
        return q_money(monthly / MONTHLY_FACTOR[to_cycle])
    except KeyError as exc:
        raise ValueError(f"unknown billing cycle: {exc.args[0]}") from exc


def q_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def as_utc(value: _T) -> _T:
    """Attach UTC to naive datetimes read back from stores that drop the offset."""
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
