import asyncio
import itertools
import logging
from datetime import date

import pytest

from gymledger.db import MemoryStore
from gymledger.errors import (
    InvalidAmount,
    InvalidDate,
    InvalidDuration,
    InvalidEntry,
    PersistenceFailure,
    ResourceNotFound,
)
from gymledger.ledger import SubscriptionLedger
from gymledger.models import BillingPeriod, LedgerEntryDraft, Resource
from gymledger.timestamps import to_timestamp

from .conftest import MONTHLY_FEE, TODAY


def payment(resource_id=1, member_id=1, amount=50000, months=1, **kw) -> LedgerEntryDraft:
    return LedgerEntryDraft(
        member_id=member_id, resource_id=resource_id, action="payment",
        amount=amount, method="cash", months=months, **kw,
    )


def slow_store(latency=0.01) -> MemoryStore:
    return MemoryStore(
        resources=[
            Resource(id=None, kind="locker", number="7", monthly_fee=MONTHLY_FEE),
            Resource(id=None, kind="locker", number="8", monthly_fee=MONTHLY_FEE),
        ],
        latency=latency,
    )


class SlowUpdateStore(MemoryStore):
    """Holds back update_resource for one resource only."""

    def __init__(self, slow_id, delay, **kw):
        super().__init__(**kw)
        self.slow_id = slow_id
        self.delay = delay

    async def update_resource(self, resource):
        if resource.id == self.slow_id:
            await asyncio.sleep(self.delay)
        await super().update_resource(resource)


class TestRecord:
    @pytest.mark.asyncio
    async def test_payment_occupies_resource(self, ledger, clock):
        entry = await ledger.record(payment(months=3, amount=150000, notes="  first rental "))

        assert entry.id == 1
        assert entry.created_at == int(clock())
        assert entry.period == BillingPeriod("2025-03-10", "2025-06-10", 3)
        assert entry.notes == "first rental"

        locker = await ledger.get_resource(1)
        assert locker.status == "occupied"
        assert locker.member_id == 1
        assert locker.current_period == entry.period

    @pytest.mark.asyncio
    async def test_explicit_period_is_kept(self, ledger):
        period = BillingPeriod("2025-04-01", "2025-05-01", 1)
        entry = await ledger.record(payment(period=period, months=None))
        assert entry.period == period

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -100])
    async def test_non_positive_payment_has_no_side_effects(self, ledger, store, amount):
        with pytest.raises(InvalidAmount):
            await ledger.record(payment(amount=amount))
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_extension_needs_a_duration(self, ledger, store):
        draft = LedgerEntryDraft(member_id=1, resource_id=1, action="extension", amount=1000, method="card")
        with pytest.raises(InvalidDuration):
            await ledger.record(draft)
        with pytest.raises(InvalidDuration):
            await ledger.record(payment(months=13))
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_unknown_action_or_method(self, ledger):
        with pytest.raises(InvalidEntry):
            await ledger.record(LedgerEntryDraft(1, 1, "gift", 100, "cash"))
        with pytest.raises(InvalidEntry):
            await ledger.record(LedgerEntryDraft(1, 1, "payment", 100, "bitcoin", months=1))

    @pytest.mark.asyncio
    async def test_unknown_resource(self, ledger):
        with pytest.raises(ResourceNotFound) as exc:
            await ledger.record(payment(resource_id=999))
        assert exc.value.resource_id == 999
        assert await ledger.entries_for_member(1) == []

    @pytest.mark.asyncio
    async def test_cancellation_releases_resource(self, ledger):
        paid = await ledger.record(payment(months=3, amount=150000))
        cancelled = await ledger.cancel(1, 1, amount=50000, notes="moved away")

        assert cancelled.action == "cancellation"
        assert cancelled.period == paid.period
        locker = await ledger.get_resource(1)
        assert locker.status == "available"
        assert locker.current_period is None
        assert locker.member_id is None

    @pytest.mark.asyncio
    async def test_refund_leaves_state_alone(self, ledger):
        await ledger.record(payment())
        before = await ledger.get_resource(1)
        await ledger.record(LedgerEntryDraft(1, 1, "refund", 10000, "transfer"))
        assert await ledger.get_resource(1) == before


class TestPurchase:
    @pytest.mark.asyncio
    async def test_first_purchase_then_back_to_back_extension(self, ledger):
        first = await ledger.purchase(1, 1, 6, "card")
        second = await ledger.purchase(1, 1, 12, "cash")

        assert (first.action, first.amount) == ("payment", 285000)
        assert first.period == BillingPeriod("2025-03-10", "2025-09-10", 6)
        assert (second.action, second.amount) == ("extension", 540000)
        assert second.period == BillingPeriod("2025-09-10", "2026-09-10", 12)

    @pytest.mark.asyncio
    async def test_fee_override(self, ledger):
        entry = await ledger.purchase(2, 5, 3, "cash", monthly_fee=30000)
        assert entry.amount == 90000

    @pytest.mark.asyncio
    async def test_free_resource_cannot_be_purchased(self):
        store = MemoryStore(resources=[Resource(id=None, kind="membership", number="M-1")])
        ledger = SubscriptionLedger(store, today=lambda: TODAY)
        with pytest.raises(InvalidAmount):
            await ledger.purchase(1, 1, 1, "cash")
        assert (await ledger.get_resource(1)).status == "available"

    @pytest.mark.asyncio
    async def test_expired_rental_restarts_from_today(self, store):
        old = SubscriptionLedger(store, today=lambda: "2024-11-01")
        await old.purchase(1, 1, 1, "cash")

        ledger = SubscriptionLedger(store, today=lambda: TODAY)
        assert (await ledger.get_resource(1)).status == "expired"

        renewed = await ledger.purchase(1, 1, 1, "cash")
        assert renewed.action == "payment"
        assert renewed.period.start_date == TODAY

    @pytest.mark.asyncio
    async def test_validation_before_any_io(self, ledger, store):
        with pytest.raises(InvalidDuration):
            await ledger.purchase(1, 1, 2.5, "cash")
        with pytest.raises(InvalidEntry):
            await ledger.purchase(1, 1, 1, "cheque")
        assert store.calls == []


class TestQueries:
    @pytest.mark.asyncio
    async def test_entries_most_recent_first_with_stable_ties(self, ledger, clock):
        a = await ledger.record(payment(resource_id=1))
        b = await ledger.record(payment(resource_id=2))
        clock.advance(60)
        c = await ledger.record(payment(resource_id=3))
        await ledger.record(payment(resource_id=4, member_id=2))

        entries = await ledger.entries_for_member(1)
        assert [e.id for e in entries] == [c.id, a.id, b.id]

    @pytest.mark.asyncio
    async def test_resources_apply_lazy_expiry(self, store):
        await SubscriptionLedger(store, today=lambda: "2024-11-01").purchase(1, 1, 1, "cash")
        ledger = SubscriptionLedger(store, today=lambda: TODAY)

        lockers = await ledger.resources(kind="locker")
        assert len(lockers) == 100
        assert lockers[0].status == "expired"
        assert await ledger.resources(kind="membership") == []
        # the stored record itself is not rewritten
        assert (await store.get_resource(1)).status == "occupied"

    @pytest.mark.asyncio
    async def test_entries_for_resource(self, ledger, clock):
        first = await ledger.record(payment(resource_id=1, member_id=1))
        await ledger.record(payment(resource_id=2, member_id=1))
        clock.advance(60)
        later = await ledger.record(payment(resource_id=1, member_id=2))

        entries = await ledger.entries_for_resource(1)
        assert [e.id for e in entries] == [later.id, first.id]
        assert await ledger.entries_for_resource(3) == []

    @pytest.mark.asyncio
    async def test_find_entries_by_action_and_inclusive_dates(self, ledger, clock):
        clock.now = to_timestamp("2025-03-10") + 3600
        await ledger.purchase(1, 1, 3, "cash")
        clock.now = to_timestamp("2025-03-11") + 3600
        await ledger.record(LedgerEntryDraft(1, 1, "refund", 10000, "cash"))
        clock.now = to_timestamp("2025-03-12") + 3600
        await ledger.cancel(1, 1)
        await ledger.purchase(1, 2, 1, "card")

        payments = await ledger.find_entries(member_id=1, action="payment")
        assert [e.resource_id for e in payments] == [2, 1]

        one_day = await ledger.find_entries(member_id=1, start_date="2025-03-11", end_date="2025-03-11")
        assert [e.action for e in one_day] == ["refund"]

        through = await ledger.find_entries(member_id=1, end_date="2025-03-11")
        assert [e.action for e in through] == ["refund", "payment"]

        on_locker = await ledger.find_entries(member_id=1, resource_id=1, action="all", start_date=date(2025, 3, 11))
        assert [e.action for e in on_locker] == ["cancellation", "refund"]

    @pytest.mark.asyncio
    async def test_history_is_paged_newest_first(self, ledger, clock):
        for n in range(1, 6):
            await ledger.record(payment(resource_id=n))
            clock.advance(60)

        page = await ledger.history(member_id=1, page=2, page_size=2)
        assert [e.resource_id for e in page.data] == [3, 2]
        assert (page.total, page.total_pages, page.has_next) == (5, 3, True)

        by_locker = await ledger.history(resource_id=4)
        assert by_locker.total == 1

    @pytest.mark.asyncio
    async def test_history_rejects_bad_queries_before_io(self, ledger, store):
        with pytest.raises(InvalidEntry):
            await ledger.history()
        with pytest.raises(InvalidDate):
            await ledger.history(member_id=1, start_date="2025-13-01")
        assert store.calls == []


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_append_restores_resource(self, ledger, store):
        store.fail_on.add("create_entry")
        with pytest.raises(PersistenceFailure) as exc:
            await ledger.purchase(1, 1, 3, "cash")

        assert isinstance(exc.value.cause, OSError)
        assert exc.value.operation == "create_entry"
        assert (await ledger.get_resource(1)).status == "available"
        store.fail_on.clear()
        assert await ledger.entries_for_member(1) == []

    @pytest.mark.asyncio
    async def test_failed_update_writes_nothing(self, ledger, store):
        store.fail_on.add("update_resource")
        with pytest.raises(PersistenceFailure):
            await ledger.purchase(1, 1, 3, "cash")
        store.fail_on.clear()
        assert await ledger.entries_for_member(1) == []

    @pytest.mark.asyncio
    async def test_read_failure_is_wrapped(self, ledger, store):
        store.fail_on.add("query_entries_by_member")
        with pytest.raises(PersistenceFailure) as exc:
            await ledger.entries_for_member(1)
        assert exc.value.__cause__ is exc.value.cause


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_overlapping_purchases_chain(self):
        ledger = SubscriptionLedger(slow_store(), today=lambda: TODAY)

        first, second = await asyncio.gather(
            ledger.purchase(1, 1, 3, "cash"),
            ledger.purchase(1, 1, 3, "card"),
        )

        assert first.period == BillingPeriod("2025-03-10", "2025-06-10", 3)
        assert second.action == "extension"
        assert second.period == BillingPeriod("2025-06-10", "2025-09-10", 3)
        assert (await ledger.get_resource(1)).current_period == second.period

    @pytest.mark.asyncio
    async def test_many_overlapping_records_lose_nothing(self):
        ledger = SubscriptionLedger(slow_store(latency=0.001), today=lambda: TODAY)

        entries = await asyncio.gather(*(ledger.record(payment(months=1)) for _ in range(6)))

        periods = [e.period for e in entries]
        for earlier, later in zip(periods, periods[1:]):
            assert later.start_date == earlier.end_date
        assert (await ledger.get_resource(1)).current_period == periods[-1]
        assert periods[-1].end_date == "2025-09-10"

    @pytest.mark.asyncio
    async def test_different_resources_interleave(self):
        store = slow_store()
        ledger = SubscriptionLedger(store, today=lambda: TODAY)

        await asyncio.gather(ledger.purchase(1, 1, 1, "cash"), ledger.purchase(2, 2, 1, "cash"))

        assert store.calls[:2] == ["get_resource", "get_resource"]

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_leave_partial_write(self):
        store = slow_store(latency=0.02)
        ledger = SubscriptionLedger(store, today=lambda: TODAY)

        task = asyncio.create_task(ledger.purchase(1, 1, 1, "cash"))
        await asyncio.sleep(0.03)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0.1)
        entries = await ledger.entries_for_member(1)
        locker = await ledger.get_resource(1)
        assert len(entries) == 1
        assert locker.status == "occupied"
        assert locker.current_period == entries[0].period

    @pytest.mark.asyncio
    async def test_entries_follow_the_order_writes_completed(self):
        store = SlowUpdateStore(
            slow_id=1,
            delay=0.05,
            resources=[Resource(id=None, kind="locker", number=n, monthly_fee=MONTHLY_FEE) for n in ("7", "8")],
        )
        ticks = itertools.count(1000)
        ledger = SubscriptionLedger(store, clock=lambda: next(ticks), today=lambda: TODAY)
        completed = []

        async def record(resource_id):
            await ledger.record(payment(resource_id=resource_id))
            completed.append(resource_id)

        await asyncio.gather(record(1), record(2))

        assert completed == [2, 1]
        entries = await ledger.entries_for_member(1)
        assert [e.resource_id for e in entries] == [1, 2]

    @pytest.mark.asyncio
    async def test_reads_wait_for_a_write_in_progress(self):
        ledger = SubscriptionLedger(slow_store(latency=0.02), today=lambda: TODAY)

        write = asyncio.create_task(ledger.record(payment()))
        await asyncio.sleep(0.05)  # resource updated, entry not yet appended
        locker, lockers, by_member, by_locker = await asyncio.gather(
            ledger.get_resource(1),
            ledger.resources(),
            ledger.entries_for_member(1),
            ledger.entries_for_resource(1),
        )

        assert locker.status == lockers[0].status == "occupied"
        assert len(by_member) == len(by_locker) == 1
        await write

    @pytest.mark.asyncio
    async def test_reads_never_see_a_rolled_back_write(self):
        store = slow_store(latency=0.02)
        store.fail_on.add("create_entry")
        ledger = SubscriptionLedger(store, today=lambda: TODAY)

        write = asyncio.create_task(ledger.record(payment()))
        await asyncio.sleep(0.05)
        locker = await ledger.get_resource(1)

        assert locker.status == "available"
        with pytest.raises(PersistenceFailure):
            await write

    @pytest.mark.asyncio
    async def test_failure_after_caller_cancelled_is_logged(self, caplog):
        store = slow_store(latency=0.02)
        store.fail_on.add("create_entry")
        ledger = SubscriptionLedger(store, today=lambda: TODAY)

        task = asyncio.create_task(ledger.purchase(1, 1, 1, "cash"))
        await asyncio.sleep(0.03)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        with caplog.at_level(logging.ERROR, logger="gymledger.ledger"):
            await asyncio.sleep(0.1)

        assert "Write failed after its caller was cancelled" in caplog.text
        assert not ledger._inflight
        assert (await ledger.get_resource(1)).status == "available"
