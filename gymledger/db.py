"""
db.py
Persistence collaborators for the ledger.

Both stores expose the same async CRUD surface. Each call is atomic for the
single record it touches; anything spanning records is the ledger's job.
MemoryStore backs tests and demos, SQLiteStore backs the Streamlit app.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Protocol

from .models import BillingPeriod, LedgerEntry, MembershipType, Resource, Staff
from .timestamps import from_timestamp, to_timestamp

logger = logging.getLogger(__name__)


class Store(Protocol):
    async def create_entry(self, entry: LedgerEntry) -> LedgerEntry: ...

    async def query_entries_by_member(self, member_id: int) -> list[LedgerEntry]: ...

    async def query_entries_by_resource(self, resource_id: int) -> list[LedgerEntry]: ...

    async def get_resource(self, resource_id: int) -> Resource | None: ...

    async def update_resource(self, resource: Resource) -> None: ...

    async def add_resource(self, resource: Resource) -> Resource: ...

    async def list_resources(self, kind: str | None = None) -> list[Resource]: ...

    async def list_membership_types(self) -> list[MembershipType]: ...

    async def list_staff(self) -> list[Staff]: ...


class MemoryStore:
    """
    Dict-backed store.

    `latency` makes every call suspend for that many seconds, and operation
    names put in `fail_on` raise OSError, to exercise interleaving and I/O
    failures.
    """

    def __init__(self, resources=(), membership_types=(), staff=(), latency: float = 0.0):
        self.latency = latency
        self.fail_on: set[str] = set()
        self.calls: list[str] = []
        self._resource_ids = itertools.count(1)
        self._entry_ids = itertools.count(1)
        self._resources: dict[int, Resource] = {}
        self._entries: list[LedgerEntry] = []
        self._membership_types = list(membership_types)
        self._staff = list(staff)
        for r in resources:
            self._put_new(r)

    def _put_new(self, resource: Resource) -> Resource:
        if resource.id is None:
            resource = replace(resource, id=next(self._resource_ids))
        self._resources[resource.id] = resource
        return resource

    async def _io(self, op: str) -> None:
        self.calls.append(op)
        await asyncio.sleep(self.latency)
        if op in self.fail_on:
            raise OSError(f"simulated {op} failure")

    async def create_entry(self, entry: LedgerEntry) -> LedgerEntry:
        await self._io("create_entry")
        stored = replace(entry, id=next(self._entry_ids))
        self._entries.append(stored)
        return stored

    async def query_entries_by_member(self, member_id: int) -> list[LedgerEntry]:
        await self._io("query_entries_by_member")
        return [e for e in self._entries if e.member_id == member_id]

    async def query_entries_by_resource(self, resource_id: int) -> list[LedgerEntry]:
        await self._io("query_entries_by_resource")
        return [e for e in self._entries if e.resource_id == resource_id]

    async def get_resource(self, resource_id: int) -> Resource | None:
        await self._io("get_resource")
        return self._resources.get(resource_id)

    async def update_resource(self, resource: Resource) -> None:
        await self._io("update_resource")
        if resource.id not in self._resources:
            raise KeyError(resource.id)
        self._resources[resource.id] = resource

    async def add_resource(self, resource: Resource) -> Resource:
        await self._io("add_resource")
        return self._put_new(resource)

    async def list_resources(self, kind: str | None = None) -> list[Resource]:
        await self._io("list_resources")
        return [r for r in self._resources.values() if kind is None or r.kind == kind]

    async def list_membership_types(self) -> list[MembershipType]:
        await self._io("list_membership_types")
        return list(self._membership_types)

    async def list_staff(self) -> list[Staff]:
        await self._io("list_staff")
        return list(self._staff)


def _period_from_row(row) -> BillingPeriod | None:
    if row["start_date"] is None or row["end_date"] is None:
        return None
    return BillingPeriod(
        start_date=from_timestamp(row["start_date"]),
        end_date=from_timestamp(row["end_date"]),
        months=row["months"],
    )


def _period_params(period: BillingPeriod | None) -> tuple:
    if period is None:
        return (None, None, None)
    return (to_timestamp(period.start_date), to_timestamp(period.end_date), period.months)


def _row_to_resource(row) -> Resource:
    return Resource(
        id=row["id"],
        kind=row["kind"],
        number=row["number"],
        status=row["status"],
        current_period=_period_from_row(row),
        member_id=row["member_id"],
        monthly_fee=row["monthly_fee"],
    )


def _row_to_entry(row) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        member_id=row["member_id"],
        resource_id=row["resource_id"],
        action=row["action"],
        amount=row["amount"],
        period=_period_from_row(row),
        method=row["method"],
        created_at=row["created_at"],
        notes=row["notes"],
    )


class SQLiteStore:
    """SQLite file store. Dates are kept as integer epoch seconds."""

    def __init__(self, db_file: Path | str):
        self.db_file = Path(db_file)

    # ---------- sync helpers ----------

    @contextmanager
    def get_conn(self):
        conn = sqlite3.connect(self.db_file, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def execute(self, sql: str, params: tuple = ()) -> int:
        with self.get_conn() as conn:
            cur = conn.execute(sql, params)
            return cur.lastrowid

    def executemany(self, sql: str, seq_of_params: list[tuple]) -> None:
        with self.get_conn() as conn:
            conn.executemany(sql, seq_of_params)

    def fetch_one(self, sql: str, params: tuple = ()):
        with self.get_conn() as conn:
            cur = conn.execute(sql, params)
            return cur.fetchone()

    def fetch_all(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self.get_conn() as conn:
            cur = conn.execute(sql, params)
            return cur.fetchall()

    def init_db(self) -> None:
        """Create tables if they do not exist yet."""
        self.execute(
            """
            CREATE TABLE IF NOT EXISTS resources (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL CHECK(kind IN ('locker','membership')),
                number TEXT NOT NULL,
                status TEXT NOT NULL CHECK(status IN ('available','occupied','expired')),
                member_id INTEGER,
                monthly_fee INTEGER NOT NULL DEFAULT 0,
                start_date INTEGER,
                end_date INTEGER,
                months INTEGER
            )
            """
        )

        self.execute(
            """
            CREATE TABLE IF NOT EXISTS ledger_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                member_id INTEGER NOT NULL,
                resource_id INTEGER NOT NULL,
                action TEXT NOT NULL CHECK(action IN ('payment','extension','cancellation','refund')),
                amount INTEGER NOT NULL,
                method TEXT NOT NULL CHECK(method IN ('cash','card','transfer')),
                start_date INTEGER,
                end_date INTEGER,
                months INTEGER,
                created_at INTEGER NOT NULL,
                notes TEXT,
                FOREIGN KEY(resource_id) REFERENCES resources(id)
            )
            """
        )

        self.execute(
            """
            CREATE TABLE IF NOT EXISTS membership_types (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                months INTEGER NOT NULL,
                price INTEGER NOT NULL
            )
            """
        )

        self.execute(
            """
            CREATE TABLE IF NOT EXISTS staff (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                role TEXT NOT NULL
            )
            """
        )
        logger.info("Database ready at %s", self.db_file)

    def seed_sample_data(self, lockers: int = 100, monthly_fee: int = 50000) -> None:
        """
        Insert lockers "1".."N", a few membership types and staff
        (only when the tables are empty).
        """
        if self.fetch_one("SELECT id FROM resources LIMIT 1") is None:
            self.executemany(
                "INSERT INTO resources(kind, number, status, monthly_fee) VALUES(?,?,?,?)",
                [("locker", str(n), "available", monthly_fee) for n in range(1, lockers + 1)],
            )
        if self.fetch_one("SELECT id FROM membership_types LIMIT 1") is None:
            self.executemany(
                "INSERT INTO membership_types(name, months, price) VALUES(?,?,?)",
                [("Monthly", 1, 80000), ("Quarterly", 3, 240000), ("Half-year", 6, 456000), ("Yearly", 12, 864000)],
            )
        if self.fetch_one("SELECT id FROM staff LIMIT 1") is None:
            self.executemany(
                "INSERT INTO staff(name, role) VALUES(?,?)",
                [("Front desk", "reception"), ("Head coach", "trainer")],
            )
        logger.info("Sample data present in %s", self.db_file)

    # ---------- store interface ----------

    def _create_entry(self, entry: LedgerEntry) -> LedgerEntry:
        new_id = self.execute(
            """
            INSERT INTO ledger_entries(member_id, resource_id, action, amount, method,
                start_date, end_date, months, created_at, notes)
            VALUES(?,?,?,?,?,?,?,?,?,?)
            """,
            (entry.member_id, entry.resource_id, entry.action, entry.amount, entry.method,
             *_period_params(entry.period), entry.created_at, entry.notes),
        )
        return replace(entry, id=new_id)

    def _update_resource(self, resource: Resource) -> None:
        with self.get_conn() as conn:
            cur = conn.execute(
                """
                UPDATE resources SET kind=?, number=?, status=?, member_id=?, monthly_fee=?,
                    start_date=?, end_date=?, months=?
                WHERE id=?
                """,
                (resource.kind, resource.number, resource.status, resource.member_id, resource.monthly_fee,
                 *_period_params(resource.current_period), resource.id),
            )
            if cur.rowcount == 0:
                raise KeyError(resource.id)

    def _add_resource(self, resource: Resource) -> Resource:
        new_id = self.execute(
            """
            INSERT INTO resources(kind, number, status, member_id, monthly_fee, start_date, end_date, months)
            VALUES(?,?,?,?,?,?,?,?)
            """,
            (resource.kind, resource.number, resource.status, resource.member_id, resource.monthly_fee,
             *_period_params(resource.current_period)),
        )
        return replace(resource, id=new_id)

    def _list_resources(self, kind: str | None) -> list[Resource]:
        if kind is None:
            rows = self.fetch_all("SELECT * FROM resources ORDER BY id ASC")
        else:
            rows = self.fetch_all("SELECT * FROM resources WHERE kind = ? ORDER BY id ASC", (kind,))
        return [_row_to_resource(r) for r in rows]

    async def create_entry(self, entry: LedgerEntry) -> LedgerEntry:
        return await asyncio.to_thread(self._create_entry, entry)

    async def query_entries_by_member(self, member_id: int) -> list[LedgerEntry]:
        rows = await asyncio.to_thread(
            self.fetch_all, "SELECT * FROM ledger_entries WHERE member_id = ? ORDER BY id ASC", (member_id,)
        )
        return [_row_to_entry(r) for r in rows]

    async def query_entries_by_resource(self, resource_id: int) -> list[LedgerEntry]:
        rows = await asyncio.to_thread(
            self.fetch_all, "SELECT * FROM ledger_entries WHERE resource_id = ? ORDER BY id ASC", (resource_id,)
        )
        return [_row_to_entry(r) for r in rows]

    async def get_resource(self, resource_id: int) -> Resource | None:
        row = await asyncio.to_thread(self.fetch_one, "SELECT * FROM resources WHERE id = ?", (resource_id,))
        return _row_to_resource(row) if row else None

    async def update_resource(self, resource: Resource) -> None:
        await asyncio.to_thread(self._update_resource, resource)

    async def add_resource(self, resource: Resource) -> Resource:
        return await asyncio.to_thread(self._add_resource, resource)

    async def list_resources(self, kind: str | None = None) -> list[Resource]:
        return await asyncio.to_thread(self._list_resources, kind)

    async def list_membership_types(self) -> list[MembershipType]:
        rows = await asyncio.to_thread(self.fetch_all, "SELECT * FROM membership_types ORDER BY months ASC, id ASC")
        return [MembershipType(id=r["id"], name=r["name"], months=r["months"], price=r["price"]) for r in rows]

    async def list_staff(self) -> list[Staff]:
        rows = await asyncio.to_thread(self.fetch_all, "SELECT * FROM staff ORDER BY name ASC")
        return [Staff(id=r["id"], name=r["name"], role=r["role"]) for r in rows]
