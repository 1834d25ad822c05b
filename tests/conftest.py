"""
Shared fixtures: an in-memory store with lockers "1".."100", a ledger pinned
to a fixed day, and a controllable clock.
"""

import time

import pytest

from gymledger.db import MemoryStore
from gymledger.ledger import SubscriptionLedger
from gymledger.models import BillingPeriod, MembershipType, Resource, Staff

TODAY = "2025-03-10"
MONTHLY_FEE = 50000


class FakeClock:
    """Returns a fixed time until advanced."""

    def __init__(self, now: float = 1_741_564_800):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def lockers() -> list[Resource]:
    return [Resource(id=None, kind="locker", number=str(n), monthly_fee=MONTHLY_FEE) for n in range(1, 101)]


@pytest.fixture
def store(lockers) -> MemoryStore:
    return MemoryStore(
        resources=lockers,
        membership_types=[MembershipType(id=1, name="Monthly", months=1, price=80000)],
        staff=[Staff(id=1, name="Front desk", role="reception")],
    )


@pytest.fixture
def ledger(store, clock) -> SubscriptionLedger:
    return SubscriptionLedger(store, clock=lambda: int(clock()), today=lambda: TODAY)


@pytest.fixture
def active_period() -> BillingPeriod:
    return BillingPeriod(start_date="2025-02-20", end_date="2025-05-20", months=3)


@pytest.fixture
def local_tz(monkeypatch):
    """Switch the process timezone; restored after the test."""

    def _set(name: str) -> None:
        monkeypatch.setenv("TZ", name)
        time.tzset()

    yield _set
    monkeypatch.undo()
    time.tzset()
