"""
app.py
Streamlit operator console for the membership lifecycle engine.
Run: streamlit run app.py
"""

from __future__ import annotations

import pandas as pd
import streamlit as st

import auth
import db
import utils
from errors import MembershipError
from lifecycle import MembershipLifecycleManager
from logging_config import setup_logging
from models import EXTENSION_INTERVALS, BillingInterval
from payments import build_gateway
from store import BookingStore

st.set_page_config(page_title="Gym Membership Console", layout="wide")


@st.cache_resource
def get_manager() -> MembershipLifecycleManager:
    # One manager per server process so the membership locks are shared
    setup_logging()
    store = BookingStore()
    db.init_db(auth.hash_password("admin123"), db_file=store.db_file)
    return MembershipLifecycleManager(store, build_gateway())


def require_login():
    if "account_id" not in st.session_state:
        st.session_state.account_id = None
        st.session_state.email = None


def logout():
    st.session_state.account_id = None
    st.session_state.email = None
    st.success("Logged out.")


def run_action(fn, *args, success: str | None = None):
    """Call a lifecycle operation and show its error (kind + message) instead of a traceback."""
    try:
        result = fn(*args)
    except MembershipError as exc:
        st.error(f"{exc.error_code}: {exc.message}")
        return None
    if success:
        st.success(success)
    return result


def login_screen(manager: MembershipLifecycleManager):
    st.title("🔐 Operator Login")

    col1, col2 = st.columns([1, 1])
    with col1:
        email = st.text_input("Email", value="admin@gym.local")
        password = st.text_input("Password", type="password")
        if st.button("Login", type="primary"):
            account = auth.login(manager.store, email, password)
            if account:
                st.session_state.account_id = account.id
                st.session_state.email = account.email
                st.rerun()
            else:
                st.error("Invalid email or password.")

    with col2:
        st.info(
            "First run creates a default operator:\n\n"
            "- email: **admin@gym.local**\n"
            "- password: **admin123**\n\n"
            "You will be forced to change it on first login."
        )


def password_form(manager: MembershipLifecycleManager, key: str):
    new1 = st.text_input("New password", type="password", key=f"{key}_1")
    new2 = st.text_input("Confirm new password", type="password", key=f"{key}_2")
    if st.button("Update password", type="primary", key=f"{key}_btn"):
        errors = auth.validate_new_password(new1, new2)
        for e in errors:
            st.error(e)
        if not errors:
            auth.change_password(manager.store, st.session_state.account_id, new1)
            st.success("Password updated.")
            st.rerun()


# ---------- Pages ----------

def availability_page(manager: MembershipLifecycleManager):
    st.header("📊 Availability")

    slot = st.text_input("Time slot", value="06:00-08:00")
    if st.button("Check availability"):
        avail = run_action(manager.check_availability, slot)
        if avail:
            c1, c2, c3 = st.columns(3)
            c1.metric("Capacity", avail.capacity)
            c2.metric("Remaining", avail.remaining_slots)
            c3.metric("Available", "yes" if avail.is_available else "no")

    st.divider()
    st.subheader("Set slot capacity")
    c1, c2 = st.columns(2)
    with c1:
        cap_slot = st.text_input("Slot", key="cap_slot")
    with c2:
        cap = st.number_input("Max capacity", min_value=1, value=150, step=1)
    if st.button("Save capacity"):
        run_action(manager.set_capacity, cap_slot, int(cap), success="Capacity saved.")


def purchase_page(manager: MembershipLifecycleManager):
    st.header("➕ New Membership")
    store = manager.store

    plans = store.list_plans()
    addons = store.list_addons()
    if not plans:
        st.info("No plans yet. Insert sample data from Settings.")
        return

    col1, col2, col3 = st.columns(3)
    with col1:
        name = st.text_input("Member name")
        email = st.text_input("Member email")
    with col2:
        plan = st.selectbox("Plan", plans, format_func=lambda p: f"{p.name} ({p.base_price}/month)")
        extra = [a for a in addons if a.id not in plan.included_addon_ids]
        chosen = st.multiselect("Add-ons", extra, format_func=lambda a: f"{a.name} (+{a.price})")
    with col3:
        interval = st.selectbox("Billing interval", list(BillingInterval), format_func=lambda i: i.value)
        slot = st.text_input("Time slot", value="06:00-08:00", key="buy_slot")
        goals = st.text_input("Goals (comma separated)")

    if st.button("Purchase", type="primary"):
        result = run_action(
            manager.enroll,
            name,
            email,
            plan.id,
            [a.id for a in chosen],
            slot,
            interval,
            [g for g in goals.split(",")],
            success="Membership created; payment pending.",
        )
        if result:
            st.json(result.to_dict())


def member_actions_page(manager: MembershipLifecycleManager):
    st.header("👥 Member Actions")
    store = manager.store

    email = st.text_input("Member email", key="actions_email")
    account = store.get_account_by_email(email) if email.strip() else None
    if not account:
        st.caption("Enter the email of an existing member.")
        return

    details = run_action(manager.details_for, account.id)
    if not details:
        return
    st.json(details.to_dict())
    membership_id = details.membership.id

    c1, c2, c3, c4 = st.columns(4)
    with c1:
        if st.button("Freeze"):
            r = run_action(manager.freeze, membership_id, success="Membership frozen.")
            if r:
                st.json(r.to_dict())
        if st.button("Unfreeze"):
            r = run_action(manager.unfreeze, membership_id, success="Membership unfrozen.")
            if r:
                st.json(r.to_dict())
    with c2:
        months = st.selectbox("Extend by (months)", sorted(EXTENSION_INTERVALS))
        if st.button("Extend"):
            r = run_action(manager.extend, membership_id, months, success="Extension initiated.")
            if r:
                st.json(r.to_dict())
    with c3:
        plans = store.list_plans()
        new_plan = st.selectbox("New plan", plans, format_func=lambda p: p.name)
        new_addons = st.multiselect("New add-ons", store.list_addons(), format_func=lambda a: a.name)
        if st.button("Change plan"):
            r = run_action(manager.edit, membership_id, new_plan.id, [a.id for a in new_addons], success="Plan changed.")
            if r:
                st.json(r.to_dict())
    with c4:
        if st.button("Confirm payment"):
            m = run_action(manager.confirm_payment, membership_id)
            if m:
                st.info(f"Payment status: {m.payment_status.value}")
        confirm = st.checkbox("Confirm cancel", value=False)
        if st.button("Cancel membership", disabled=not confirm):
            r = run_action(manager.cancel, membership_id, success="Membership cancelled.")
            if r:
                for w in r.warnings:
                    st.warning(w)
                st.json(r.to_dict())

    st.divider()
    st.subheader("Freeze status")
    status = run_action(manager.get_freeze_status, membership_id)
    if status:
        st.json(status.to_dict())


def reports_page(manager: MembershipLifecycleManager):
    st.header("🧾 Reports")
    store = manager.store

    st.subheader("Export memberships to CSV")
    if store.list_memberships():
        st.download_button(
            "Download memberships.csv",
            data=utils.memberships_to_csv_bytes(store),
            file_name="memberships.csv",
            mime="text/csv",
        )
    else:
        st.caption("No memberships to export.")

    st.divider()

    st.subheader("Export payments to CSV")
    payments = store.list_payments()
    if payments:
        st.download_button(
            "Download payments.csv",
            data=utils.payments_to_csv_bytes(store),
            file_name="payments.csv",
            mime="text/csv",
        )
        st.dataframe(pd.DataFrame([dict(r) for r in payments]), use_container_width=True, hide_index=True)
    else:
        st.caption("No payments to export.")

    st.divider()

    st.subheader("Revenue summary by month")
    st.dataframe(utils.revenue_summary_by_month(store), use_container_width=True, hide_index=True)


def settings_page(manager: MembershipLifecycleManager):
    st.header("⚙️ Settings")

    st.subheader("Change password")
    password_form(manager, "settings_pw")

    st.divider()

    st.subheader("Sample data")
    st.caption("Insert plans, add-ons, discounts and slot capacities (adds new rows each run).")
    if st.button("Insert sample data"):
        utils.insert_sample_data(manager.store)
        st.success("Sample data inserted.")
        st.rerun()


PAGES = {
    "Availability": availability_page,
    "New Membership": purchase_page,
    "Member Actions": member_actions_page,
    "Reports": reports_page,
    "Settings": settings_page,
}


def main_app(manager: MembershipLifecycleManager):
    st.sidebar.title("🏋️ Gym Memberships")
    st.sidebar.caption(f"Logged in as: {st.session_state.email}")

    pages = list(PAGES)
    if "page" not in st.session_state:
        st.session_state.page = pages[0]
    st.session_state.page = st.sidebar.radio("Navigate", pages, index=pages.index(st.session_state.page))

    if st.sidebar.button("Logout"):
        logout()
        st.rerun()

    PAGES[st.session_state.page](manager)


# --------- App entry ---------

def run():
    manager = get_manager()
    require_login()

    if st.session_state.account_id is None:
        login_screen(manager)
        return

    # Force password change on first login after DB creation
    if db.is_force_password_change(manager.store.db_file):
        st.title("⚠️ Change Password (Required)")
        st.warning("You must change the default password before using the app.")
        password_form(manager, "forced_pw")
        return

    main_app(manager)


if __name__ == "__main__":
    run()
