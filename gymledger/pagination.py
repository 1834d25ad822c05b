"""
pagination.py
Filtering and paging for list views (lockers, members, payments, ledger).

Everything here is a pure function of its arguments. The current page and
filter belong to the caller; ListQuery only encodes the rule that a filter
change sends the view back to page 1.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace

ALL = "all"


@dataclass(frozen=True)
class Page:
    data: list
    total: int
    page: int = 1
    page_size: int = 50

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size)

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1


@dataclass(frozen=True)
class ListQuery:
    page: int = 1
    page_size: int = 50
    status: str | None = None
    search: str | None = None

    def with_filters(self, **changes) -> "ListQuery":
        """Apply filter changes; any actual change resets to page 1."""
        unknown = set(changes) - {"status", "search"}
        if unknown:
            raise TypeError(f"Not a filter field: {', '.join(sorted(unknown))}")
        updated = replace(self, **changes)
        if (updated.status, updated.search) != (self.status, self.search):
            updated = replace(updated, page=1)
        return updated

    def with_page(self, page: int) -> "ListQuery":
        return replace(self, page=page)


def _field(item, name):
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def _unconstrained(value) -> bool:
    return value is None or value == "" or value == ALL


def filter_items(items, status=None, search=None, status_field="status", search_fields=("number",)) -> list:
    """
    Exact match on `status_field` and case-insensitive substring match on any
    of `search_fields`. None, "" and "all" leave a field unconstrained.
    """
    needle = None if _unconstrained(search) else str(search).strip().lower()
    out = []
    for item in items:
        if not _unconstrained(status) and _field(item, status_field) != status:
            continue
        if needle:
            haystacks = (_field(item, f) for f in search_fields)
            if not any(h is not None and needle in str(h).lower() for h in haystacks):
                continue
        out.append(item)
    return out


def paginate(items: Sequence, page: int, page_size: int) -> Page:
    if page < 1:
        raise ValueError(f"page must be >= 1, got {page}")
    if page_size < 1:
        raise ValueError(f"page_size must be >= 1, got {page_size}")
    start = (page - 1) * page_size
    return Page(data=list(items[start:start + page_size]), total=len(items), page=page, page_size=page_size)


def query(items, list_query: ListQuery, status_field="status", search_fields=("number",)) -> Page:
    """Filter, then page."""
    matched = filter_items(
        items,
        status=list_query.status,
        search=list_query.search,
        status_field=status_field,
        search_fields=search_fields,
    )
    return paginate(matched, list_query.page, list_query.page_size)


def visible_page_numbers(current: int, total_pages: int, max_visible: int = 5) -> list[int]:
    """Window of page buttons centred on the current page."""
    start = max(1, current - max_visible // 2)
    end = min(total_pages, start + max_visible - 1)
    if end - start + 1 < max_visible:
        start = max(1, end - max_visible + 1)
    return list(range(start, end + 1))
