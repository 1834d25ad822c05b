"""
models.py
Domain records (billing periods, quotes, ledger entries, resources) and the
enumerated values they accept.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

MIN_MONTHS = 1
MAX_MONTHS = 12

# Duration choices offered by the payment forms, in months
PLAN_MONTHS = tuple(range(MIN_MONTHS, MAX_MONTHS + 1))

ACTIONS = ("payment", "extension", "cancellation", "refund")
CHARGING_ACTIONS = ("payment", "extension")
METHODS = ("cash", "card", "transfer")
RESOURCE_KINDS = ("locker", "membership")
STATUSES = ("available", "occupied", "expired")


@dataclass(frozen=True)
class BillingPeriod:
    start_date: str  # YYYY-MM-DD
    end_date: str  # YYYY-MM-DD
    months: int

    def is_active(self, today: str) -> bool:
        # ISO dates compare correctly as strings
        return self.end_date >= today


@dataclass(frozen=True)
class PriceQuote:
    months: int
    base_monthly_fee: int
    discount_rate: float  # 0, 0.05 or 0.10
    total_price: int

    @property
    def original_amount(self) -> int:
        return self.base_monthly_fee * self.months

    @property
    def discount_amount(self) -> int:
        return self.original_amount - self.total_price


@dataclass(frozen=True)
class LedgerEntryDraft:
    """A ledger entry as submitted by a form: no id, no created_at yet."""

    member_id: int
    resource_id: int
    action: str
    amount: int
    method: str
    period: BillingPeriod | None = None
    months: int | None = None
    notes: str | None = None


@dataclass(frozen=True)
class LedgerEntry:
    id: int | None
    member_id: int
    resource_id: int
    action: str
    amount: int
    period: BillingPeriod | None
    method: str  # cash/card/transfer
    created_at: int  # epoch seconds
    notes: str | None = None


@dataclass(frozen=True)
class Resource:
    id: int | None
    kind: str  # 'locker' or 'membership'
    number: str
    status: str = "available"
    current_period: BillingPeriod | None = None
    member_id: int | None = None
    monthly_fee: int = 0

    def status_on(self, today: str) -> str:
        """Status with expiry applied: an occupied resource past its end date is expired."""
        if self.status == "occupied" and self.current_period and not self.current_period.is_active(today):
            return "expired"
        return self.status

    def as_of(self, today: str) -> "Resource":
        status = self.status_on(today)
        if status == self.status:
            return self
        return replace(self, status=status)


@dataclass(frozen=True)
class MembershipType:
    id: int | None
    name: str
    months: int
    price: int


@dataclass(frozen=True)
class Staff:
    id: int | None
    name: str
    role: str
