"""
utils.py
Calendar helpers, expiry reminders, exports and revenue reports.
"""

from __future__ import annotations

from datetime import date, timedelta

import pandas as pd

from .errors import InvalidDate
from .models import LedgerEntry, Resource
from .timestamps import from_timestamp

LEDGER_COLUMNS = [
    "id", "member_id", "resource_id", "action", "amount", "method",
    "start_date", "end_date", "months", "created_at", "notes",
]
RESOURCE_COLUMNS = ["id", "kind", "number", "status", "member_id", "monthly_fee", "start_date", "end_date"]

# Actions that give money back
CREDIT_ACTIONS = ("cancellation", "refund")


def today_iso() -> str:
    return date.today().isoformat()


def parse_iso(d: str) -> date:
    return date.fromisoformat(d)


def coerce_iso(value) -> str:
    """date or "YYYY-MM-DD" -> "YYYY-MM-DD"; anything else raises InvalidDate."""
    if isinstance(value, date):
        return date(value.year, value.month, value.day).isoformat()
    if isinstance(value, str):
        try:
            return parse_iso(value.strip()).isoformat()
        except ValueError:
            pass
    raise InvalidDate(f"Not a calendar date: {value!r}")


def add_months(start: date, months: int) -> date:
    """
    Add months while keeping day in valid range (e.g., Jan 31 + 1 month => Feb 28/29).
    """
    y = start.year + (start.month - 1 + months) // 12
    m = (start.month - 1 + months) % 12 + 1
    # last day of target month
    if m == 12:
        next_month = date(y + 1, 1, 1)
    else:
        next_month = date(y, m + 1, 1)
    last_day = next_month - timedelta(days=1)
    day = min(start.day, last_day.day)
    return date(y, m, day)


def days_until_expiry(end_date: str | None, today: str) -> int | None:
    if not end_date:
        return None
    return (parse_iso(end_date) - parse_iso(today)).days


def expiring_soon(resources, today: str, days: int = 7) -> list[Resource]:
    """Occupied resources whose period ends within the next `days` days, soonest first."""
    due = []
    for r in resources:
        if r.status_on(today) != "occupied" or r.current_period is None:
            continue
        left = days_until_expiry(r.current_period.end_date, today)
        if 0 <= left <= days:
            due.append(r)
    return sorted(due, key=lambda r: (r.current_period.end_date, r.number))


def entry_row(e: LedgerEntry) -> dict:
    p = e.period
    return {
        "id": e.id,
        "member_id": e.member_id,
        "resource_id": e.resource_id,
        "action": e.action,
        "amount": e.amount,
        "method": e.method,
        "start_date": p.start_date if p else None,
        "end_date": p.end_date if p else None,
        "months": p.months if p else None,
        "created_at": e.created_at,
        "notes": e.notes,
    }


def resource_row(r: Resource) -> dict:
    p = r.current_period
    return {
        "id": r.id,
        "kind": r.kind,
        "number": r.number,
        "status": r.status,
        "member_id": r.member_id,
        "monthly_fee": r.monthly_fee,
        "start_date": p.start_date if p else None,
        "end_date": p.end_date if p else None,
    }


def entries_to_frame(entries) -> pd.DataFrame:
    return pd.DataFrame([entry_row(e) for e in entries], columns=LEDGER_COLUMNS)


def resources_to_frame(resources) -> pd.DataFrame:
    return pd.DataFrame([resource_row(r) for r in resources], columns=RESOURCE_COLUMNS)


def entries_to_csv_bytes(entries) -> bytes:
    df = entries_to_frame(entries)
    return df.to_csv(index=False).encode("utf-8")


def revenue_summary_by_month(entries) -> pd.DataFrame:
    """Net revenue per month of entry creation; refunds and cancellations count negative."""
    df = entries_to_frame(entries)
    if df.empty:
        return pd.DataFrame(columns=["month", "revenue"])
    df["month"] = df["created_at"].map(lambda ts: from_timestamp(int(ts))[:7])
    df["revenue"] = df["amount"].where(~df["action"].isin(CREDIT_ACTIONS), -df["amount"])
    summary = df.groupby("month", as_index=False)["revenue"].sum()
    return summary.sort_values("month", ascending=False).reset_index(drop=True)
