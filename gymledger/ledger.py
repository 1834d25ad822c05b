"""
ledger.py
Append-only ledger of payments, extensions, cancellations and refunds, and
the resource state changes they cause.

Writes against one resource are serialized with a per-resource asyncio.Lock,
so an extension always reads the period left by the previous write. A write,
once started, runs to completion even if the caller is cancelled: it either
applies both the resource update and the entry append or neither. Reads
wait for writes already under way.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import timedelta

from . import pricing
from .config import DEFAULT_PAGE_SIZE
from .errors import InvalidAmount, InvalidDuration, InvalidEntry, LedgerError, PersistenceFailure, ResourceNotFound
from .models import ACTIONS, CHARGING_ACTIONS, METHODS, LedgerEntry, LedgerEntryDraft, Resource
from .pagination import Page, filter_items, paginate
from .timestamps import current_timestamp, to_timestamp
from .utils import coerce_iso, parse_iso, today_iso

logger = logging.getLogger(__name__)


def validate_draft(draft: LedgerEntryDraft) -> None:
    if draft.action not in ACTIONS:
        raise InvalidEntry(f"Unknown action {draft.action!r}.")
    if draft.method not in METHODS:
        raise InvalidEntry(f"Unknown payment method {draft.method!r}.")
    if isinstance(draft.amount, bool) or not isinstance(draft.amount, int):
        raise InvalidAmount(f"Amount must be a whole number, got {draft.amount!r}.")
    if draft.action in CHARGING_ACTIONS:
        if draft.amount <= 0:
            raise InvalidAmount(f"Amount must be > 0 for {draft.action}, got {draft.amount}.")
        if draft.period is None:
            if draft.months is None:
                raise InvalidDuration(f"A {draft.action} needs a period or a number of months.")
            pricing.validate_months(draft.months)


def created_between(start_date=None, end_date=None) -> tuple[int | None, int | None]:
    """
    Inclusive calendar-date range -> half-open [since, until) epoch seconds.
    A missing end leaves that side open.
    """
    since = until = None
    if start_date not in (None, ""):
        since = to_timestamp(coerce_iso(start_date))
    if end_date not in (None, ""):
        until = to_timestamp(parse_iso(coerce_iso(end_date)) + timedelta(days=1))
    return since, until


def filter_entries(entries, action=None, start_date=None, end_date=None) -> list[LedgerEntry]:
    """Keep entries of `action` ("all"/None for any) created within the date range."""
    since, until = created_between(start_date, end_date)
    return [
        e for e in filter_items(entries, status=action, status_field="action")
        if (since is None or e.created_at >= since) and (until is None or e.created_at < until)
    ]


def newest_first(entries) -> list[LedgerEntry]:
    # sorted() is stable: same-second entries keep insertion order
    return sorted(entries, key=lambda e: e.created_at, reverse=True)


def _report_orphaned(task: asyncio.Task) -> None:
    # Runs only for writes whose caller was cancelled; nobody else sees the result
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Write failed after its caller was cancelled", exc_info=exc)


class SubscriptionLedger:
    def __init__(self, store, clock=current_timestamp, today=today_iso):
        self.store = store
        self._clock = clock
        self._today = today
        self._locks: dict[int, asyncio.Lock] = {}
        self._inflight: set[asyncio.Task] = set()

    # ---------- internals ----------

    def _lock_for(self, resource_id: int) -> asyncio.Lock:
        lock = self._locks.get(resource_id)
        if lock is None:
            lock = self._locks[resource_id] = asyncio.Lock()
        return lock

    def _resolve_today(self, today) -> str:
        return self._today() if today is None else coerce_iso(today)

    async def _call(self, op: str, *args):
        try:
            return await getattr(self.store, op)(*args)
        except LedgerError:
            raise
        except Exception as exc:
            logger.exception("Store call %s failed", op)
            raise PersistenceFailure(op, exc) from exc

    async def _load(self, resource_id: int) -> Resource:
        resource = await self._call("get_resource", resource_id)
        if resource is None:
            raise ResourceNotFound(resource_id)
        return resource

    async def _submit(self, coro):
        # Shielded so a cancelled caller cannot interrupt a half-done write
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(_report_orphaned)
            raise

    async def _settled(self) -> None:
        """Wait for writes currently holding a resource lock to finish."""
        for lock in list(self._locks.values()):
            if lock.locked():
                async with lock:
                    pass

    async def _apply(self, resource: Resource, draft: LedgerEntryDraft, today: str) -> LedgerEntry:
        period = draft.period
        if draft.action in CHARGING_ACTIONS:
            if period is None:
                period = pricing.extend(resource.current_period, draft.months, today)
            updated = replace(resource, status="occupied", current_period=period, member_id=draft.member_id)
        elif draft.action == "cancellation":
            period = period or resource.current_period
            updated = replace(resource, status="available", current_period=None, member_id=None)
        else:
            period = period or resource.current_period
            updated = resource

        if updated != resource:
            await self._call("update_resource", updated)
        # Stamped after the update so entries sort by when their write completed
        entry = LedgerEntry(
            id=None,
            member_id=draft.member_id,
            resource_id=resource.id,
            action=draft.action,
            amount=draft.amount,
            period=period,
            method=draft.method,
            created_at=self._clock(),
            notes=(draft.notes or "").strip() or None,
        )
        try:
            stored = await self._call("create_entry", entry)
        except PersistenceFailure:
            if updated != resource:
                logger.warning("Ledger append failed, restoring resource %s", resource.id)
                await self._call("update_resource", resource)
            raise

        logger.info(
            "Recorded %s of %s for member %s on resource %s (%s)",
            stored.action, stored.amount, stored.member_id, stored.resource_id,
            f"{period.start_date}..{period.end_date}" if period else "no period",
        )
        return stored

    async def _record_locked(self, draft: LedgerEntryDraft, today: str) -> LedgerEntry:
        async with self._lock_for(draft.resource_id):
            resource = await self._load(draft.resource_id)
            return await self._apply(resource, draft, today)

    async def _purchase_locked(self, member_id, resource_id, months, method, notes, monthly_fee, today):
        async with self._lock_for(resource_id):
            resource = await self._load(resource_id)
            fee = resource.monthly_fee if monthly_fee is None else monthly_fee
            q = pricing.quote(fee, months)
            if q.total_price <= 0:
                raise InvalidAmount(f"Resource {resource_id} has no fee to charge.")
            action = "extension" if resource.status_on(today) == "occupied" else "payment"
            draft = LedgerEntryDraft(
                member_id=member_id,
                resource_id=resource_id,
                action=action,
                amount=q.total_price,
                method=method,
                months=months,
                notes=notes,
            )
            return await self._apply(resource, draft, today)

    # ---------- public API ----------

    async def record(self, draft: LedgerEntryDraft, today=None) -> LedgerEntry:
        """
        Append an entry and apply its effect on the resource.
        Payments and extensions without an explicit period get one from
        pricing.extend(), based on the resource's period at write time.
        """
        validate_draft(draft)
        today = self._resolve_today(today)
        return await self._submit(self._record_locked(draft, today))

    async def purchase(self, member_id, resource_id, months, method, notes=None, monthly_fee=None, today=None):
        """Quote and record a payment (free resource) or back-to-back extension (active one)."""
        pricing.validate_months(months)
        if method not in METHODS:
            raise InvalidEntry(f"Unknown payment method {method!r}.")
        today = self._resolve_today(today)
        return await self._submit(
            self._purchase_locked(member_id, resource_id, months, method, notes, monthly_fee, today)
        )

    async def cancel(self, member_id, resource_id, method="cash", amount=0, notes=None, today=None):
        draft = LedgerEntryDraft(
            member_id=member_id,
            resource_id=resource_id,
            action="cancellation",
            amount=amount,
            method=method,
            notes=notes,
        )
        return await self.record(draft, today=today)

    # Reads wait for writes already under way, so a resource update is never
    # seen without the entry that goes with it.

    async def entries_for_member(self, member_id) -> list[LedgerEntry]:
        """Most recent first; entries created in the same second keep insertion order."""
        await self._settled()
        return newest_first(await self._call("query_entries_by_member", member_id))

    async def entries_for_resource(self, resource_id) -> list[LedgerEntry]:
        async with self._lock_for(resource_id):
            entries = await self._call("query_entries_by_resource", resource_id)
        return newest_first(entries)

    async def find_entries(self, member_id=None, resource_id=None, action=None, start_date=None, end_date=None):
        """
        Entries of a member, a resource, or a member on one resource, most
        recent first, narrowed to one action and an inclusive date range.
        """
        if member_id is None and resource_id is None:
            raise InvalidEntry("A ledger query needs a member or a resource.")
        created_between(start_date, end_date)  # bad dates fail before any I/O
        if resource_id is None:
            entries = await self.entries_for_member(member_id)
        else:
            entries = await self.entries_for_resource(resource_id)
            if member_id is not None:
                entries = [e for e in entries if e.member_id == member_id]
        return filter_entries(entries, action=action, start_date=start_date, end_date=end_date)

    async def history(
        self,
        member_id=None,
        resource_id=None,
        action=None,
        start_date=None,
        end_date=None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Page:
        """One page of find_entries(); Page.total counts every match."""
        entries = await self.find_entries(member_id, resource_id, action, start_date, end_date)
        return paginate(entries, page, page_size)

    async def get_resource(self, resource_id, today=None) -> Resource:
        today = self._resolve_today(today)
        async with self._lock_for(resource_id):
            resource = await self._load(resource_id)
        return resource.as_of(today)

    async def resources(self, kind=None, today=None) -> list[Resource]:
        today = self._resolve_today(today)
        await self._settled()
        return [r.as_of(today) for r in await self._call("list_resources", kind)]
