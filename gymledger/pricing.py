"""
pricing.py
Duration -> price and billing period.

One discount rate applies to the whole purchase, chosen by its length in
months. Extensions are priced on their own months only, never on the
member's cumulative history.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from .errors import InvalidDuration, InvalidFee
from .models import MAX_MONTHS, MIN_MONTHS, BillingPeriod, PriceQuote
from .utils import add_months, coerce_iso, parse_iso

# (minimum months, rate), checked from the longest tier down
DISCOUNT_SCHEDULE = (
    (12, Decimal("0.10")),
    (6, Decimal("0.05")),
    (1, Decimal("0")),
)


def validate_months(months) -> int:
    if isinstance(months, bool) or not isinstance(months, int):
        raise InvalidDuration(f"Months must be a whole number, got {months!r}.")
    if not MIN_MONTHS <= months <= MAX_MONTHS:
        raise InvalidDuration(f"Months must be between {MIN_MONTHS} and {MAX_MONTHS}, got {months}.")
    return months


def _discount(months: int) -> Decimal:
    for min_months, rate in DISCOUNT_SCHEDULE:
        if months >= min_months:
            return rate
    return Decimal("0")


def discount_rate(months) -> float:
    return float(_discount(validate_months(months)))


def discount_description(months) -> str | None:
    rate = discount_rate(months)
    if not rate:
        return None
    return f"{round(rate * 100)}% off for {months} months"


def duration_label(months) -> str:
    """Select-box label, e.g. "1 month" or "6 months (5% off)"."""
    rate = discount_rate(months)
    label = "1 month" if months == 1 else f"{months} months"
    return f"{label} ({round(rate * 100)}% off)" if rate else label


def quote(base_monthly_fee, months) -> PriceQuote:
    months = validate_months(months)
    if isinstance(base_monthly_fee, bool) or not isinstance(base_monthly_fee, int):
        raise InvalidFee(f"Monthly fee must be a whole number, got {base_monthly_fee!r}.")
    if base_monthly_fee < 0:
        raise InvalidFee(f"Monthly fee must be >= 0, got {base_monthly_fee}.")

    rate = _discount(months)
    total = (Decimal(base_monthly_fee * months) * (1 - rate)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return PriceQuote(
        months=months,
        base_monthly_fee=base_monthly_fee,
        discount_rate=float(rate),
        total_price=int(total),
    )


def period_for(start_date, months) -> BillingPeriod:
    months = validate_months(months)
    start = coerce_iso(start_date)
    end = add_months(parse_iso(start), months)
    return BillingPeriod(start_date=start, end_date=end.isoformat(), months=months)


def extend(current_period: BillingPeriod | None, months, today) -> BillingPeriod:
    """
    New period for a purchase made on `today`.
    An active period is continued from its end date with no gap; a missing or
    expired one restarts from today.
    """
    months = validate_months(months)
    today = coerce_iso(today)
    if current_period is not None and current_period.is_active(today):
        return period_for(current_period.end_date, months)
    return period_for(today, months)
