"""
app.py
Streamlit front desk for lockers, memberships and their payment ledger.
Run: streamlit run app.py
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict

import pandas as pd
import streamlit as st

from gymledger import pricing, utils
from gymledger.cache import ExpiringCache, ReferenceCatalog
from gymledger.config import configure_logging, load_settings
from gymledger.db import SQLiteStore
from gymledger.errors import LedgerError
from gymledger.ledger import SubscriptionLedger
from gymledger.models import ACTIONS, METHODS, PLAN_MONTHS, STATUSES
from gymledger.pagination import ListQuery, paginate, query, visible_page_numbers

st.set_page_config(page_title="Gym Locker & Membership Desk", layout="wide")


@st.cache_resource
def get_store() -> SQLiteStore:
    settings = load_settings()
    configure_logging(settings.log_level)
    store = SQLiteStore(settings.db_file)
    store.init_db()
    return store


@st.cache_resource
def get_catalog() -> ReferenceCatalog:
    return ReferenceCatalog(get_store(), ExpiringCache(ttl=load_settings().cache_ttl))


def run(coro):
    return asyncio.run(coro)


def ledger() -> SubscriptionLedger:
    # One ledger per call: its locks belong to the event loop asyncio.run creates
    return SubscriptionLedger(get_store())


def list_state(name: str) -> ListQuery:
    key = f"{name}_query"
    if key not in st.session_state:
        st.session_state[key] = ListQuery(page_size=load_settings().page_size)
    return st.session_state[key]


def filter_controls(name: str, statuses) -> ListQuery:
    current = list_state(name)
    c1, c2 = st.columns([2, 1])
    with c1:
        search = st.text_input("Search (number)", value=current.search or "", key=f"{name}_search")
    with c2:
        options = ["all", *statuses]
        status = st.selectbox(
            "Status", options, index=options.index(current.status or "all"), key=f"{name}_status"
        )
    updated = current.with_filters(status=status, search=search)
    st.session_state[f"{name}_query"] = updated
    return updated


def pager(name: str, page) -> None:
    if page.total_pages <= 1:
        return
    pages = visible_page_numbers(page.page, page.total_pages)
    cols = st.columns(len(pages) + 2)
    if cols[0].button("‹", disabled=not page.has_prev, key=f"{name}_prev"):
        st.session_state[f"{name}_query"] = list_state(name).with_page(page.page - 1)
        st.rerun()
    for col, n in zip(cols[1:-1], pages):
        if col.button(str(n), type=("primary" if n == page.page else "secondary"), key=f"{name}_p{n}"):
            st.session_state[f"{name}_query"] = list_state(name).with_page(n)
            st.rerun()
    if cols[-1].button("›", disabled=not page.has_next, key=f"{name}_next"):
        st.session_state[f"{name}_query"] = list_state(name).with_page(page.page + 1)
        st.rerun()


def dashboard_page():
    st.header("📊 Dashboard")

    today = utils.today_iso()
    resources = run(ledger().resources(today=today))
    occupied = [r for r in resources if r.status == "occupied"]
    expired = [r for r in resources if r.status == "expired"]
    due = utils.expiring_soon(resources, today)

    c1, c2, c3 = st.columns(3)
    c1.metric("Occupied", len(occupied))
    c2.metric("Expired", len(expired))
    c3.metric("Expiring in next 7 days", len(due))

    st.divider()

    st.subheader("Expiring soon (next 7 days)")
    if due:
        st.dataframe(utils.resources_to_frame(due), use_container_width=True, hide_index=True)
    else:
        st.caption("Nothing expires in the next 7 days.")


def lockers_page():
    st.header("🔐 Lockers")

    lockers = run(ledger().resources(kind="locker"))
    list_query = filter_controls("lockers", STATUSES)
    page = query(lockers, list_query)

    st.caption(f"{page.total} lockers match")
    if page.data:
        st.dataframe(utils.resources_to_frame(page.data), use_container_width=True, hide_index=True)
    else:
        st.caption("No lockers match.")
    pager("lockers", page)


def payments_page():
    st.header("💳 Payments")

    resources = run(ledger().resources())
    if not resources:
        st.info("No lockers or memberships yet. Insert sample data from Settings.")
        return

    options = {f"{r.kind} {r.number} ({r.status})": r for r in resources}
    chosen = options[st.selectbox("Resource", list(options.keys()))]

    c1, c2, c3, c4 = st.columns([1, 1, 1, 2])
    with c1:
        member_id = st.number_input("Member ID", min_value=1, step=1, value=chosen.member_id or 1)
    with c2:
        months = st.selectbox("Duration", PLAN_MONTHS, format_func=pricing.duration_label)
    with c3:
        method = st.selectbox("Method", list(METHODS))
    with c4:
        notes = st.text_input("Notes", value="")

    q = pricing.quote(chosen.monthly_fee, months)
    period = pricing.extend(chosen.current_period, months, utils.today_iso())
    st.info(f"Period **{period.start_date} → {period.end_date}** | Total **{q.total_price}** (list {q.original_amount})")
    hint = pricing.discount_description(months)
    if hint:
        st.caption(hint)

    b1, b2 = st.columns(2)
    with b1:
        if st.button("Record payment", type="primary"):
            try:
                entry = run(ledger().purchase(int(member_id), chosen.id, months, method, notes=notes))
                st.success(f"Recorded {entry.action} of {entry.amount}.")
                st.rerun()
            except LedgerError as e:
                st.error(str(e))
    with b2:
        if st.button("Cancel rental", disabled=chosen.status == "available"):
            try:
                run(ledger().cancel(int(member_id), chosen.id, method=method, notes=notes))
                st.success("Rental cancelled.")
                st.rerun()
            except LedgerError as e:
                st.error(str(e))


def ledger_page():
    st.header("📒 Ledger")

    current = list_state("ledger")
    c1, c2, c3, c4, c5 = st.columns(5)
    with c1:
        member_id = int(st.number_input("Member ID (0 = any)", min_value=0, step=1, value=1))
    with c2:
        resource_id = int(st.number_input("Resource ID (0 = any)", min_value=0, step=1, value=0))
    with c3:
        options = ["all", *ACTIONS]
        action = st.selectbox("Action", options, index=options.index(current.status or "all"))
    with c4:
        start = st.date_input("From", value=None)
    with c5:
        end = st.date_input("To", value=None)

    # Any change of who/when goes back to page 1, like the action filter
    window = (member_id, resource_id, start, end)
    if st.session_state.get("ledger_window") != window:
        st.session_state["ledger_window"] = window
        current = current.with_page(1)
    list_query = current.with_filters(status=action)
    st.session_state["ledger_query"] = list_query

    if not member_id and not resource_id:
        st.caption("Enter a member or a resource.")
        return

    try:
        entries = run(
            ledger().find_entries(
                member_id=member_id or None,
                resource_id=resource_id or None,
                action=action,
                start_date=start,
                end_date=end,
            )
        )
    except LedgerError as e:
        st.error(str(e))
        return

    if not entries:
        st.caption("No matching entries.")
        return

    page = paginate(entries, list_query.page, list_query.page_size)
    st.caption(f"{page.total} entries match")
    st.dataframe(utils.entries_to_frame(page.data), use_container_width=True, hide_index=True)
    pager("ledger", page)

    st.download_button(
        "Download ledger.csv",
        data=utils.entries_to_csv_bytes(entries),
        file_name="ledger.csv",
        mime="text/csv",
    )

    st.subheader("Revenue by month")
    st.dataframe(utils.revenue_summary_by_month(entries), use_container_width=True, hide_index=True)


def settings_page():
    st.header("⚙️ Settings")

    catalog = get_catalog()
    st.subheader("Membership types")
    types = run(catalog.membership_types())
    st.dataframe(pd.DataFrame([asdict(t) for t in types]), use_container_width=True, hide_index=True)

    st.subheader("Staff")
    staff = run(catalog.staff())
    st.dataframe(pd.DataFrame([asdict(s) for s in staff]), use_container_width=True, hide_index=True)

    if st.button("Reload reference data"):
        catalog.invalidate()
        st.rerun()

    st.divider()

    st.subheader("Sample data")
    st.caption("Creates lockers 1-100, membership types and staff when those tables are empty.")
    if st.button("Insert sample data"):
        settings = load_settings()
        get_store().seed_sample_data(monthly_fee=settings.monthly_fee)
        catalog.invalidate()
        st.success("Sample data inserted.")
        st.rerun()


def main_app():
    st.sidebar.title("🏋️ Gym Desk")

    pages = ["Dashboard", "Lockers", "Payments", "Ledger", "Settings"]
    if "page" not in st.session_state:
        st.session_state.page = "Dashboard"
    st.session_state.page = st.sidebar.radio("Navigate", pages, index=pages.index(st.session_state.page))

    if st.session_state.page == "Dashboard":
        dashboard_page()
    elif st.session_state.page == "Lockers":
        lockers_page()
    elif st.session_state.page == "Payments":
        payments_page()
    elif st.session_state.page == "Ledger":
        ledger_page()
    elif st.session_state.page == "Settings":
        settings_page()


if __name__ == "__main__":
    main_app()
