"""
app.py
Streamlit Society Maintenance Portal (admins manage flats and dues, members pay).
Run: streamlit run app.py
"""

from __future__ import annotations

import logging
from datetime import date

import pandas as pd
import streamlit as st

import auth
import billing
import config
import db
import payments
import utils
from models import MAINTENANCE_TYPES, TRANSACTION_STATUSES

st.set_page_config(page_title="Society Maintenance Portal", layout="wide")

logger = logging.getLogger(__name__)


@st.cache_resource
def get_gateway() -> payments.DemoGateway:
    # One client per process, handed to every workflow call
    return payments.DemoGateway()


@st.cache_resource
def get_clock() -> utils.Clock:
    return utils.Clock()


def init_once():
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Initialize DB + default admin if needed
    default_hash = auth.hash_password("admin123")
    db.init_db(default_hash)


def require_login():
    for key, default in (("logged_in", False), ("username", None), ("role", None), ("member_id", None)):
        if key not in st.session_state:
            st.session_state[key] = default


def logout():
    st.session_state.logged_in = False
    st.session_state.username = None
    st.session_state.role = None
    st.session_state.member_id = None
    st.success("Logged out.")


def login_screen():
    st.title("🏢 Society Maintenance Portal")
    st.caption("Sign in as a member or administrator to continue.")

    member_tab, admin_tab = st.tabs(["Member", "Admin"])
    with member_tab:
        flat_number = st.text_input("Flat number")
        password = st.text_input("Password", type="password", key="member_pw")
        if st.button("Login as member", type="primary"):
            member = auth.member_login(flat_number.strip(), password)
            if member:
                st.session_state.logged_in = True
                st.session_state.role = "member"
                st.session_state.member_id = member["id"]
                st.session_state.username = member["flat_number"]
                st.rerun()
            else:
                st.error("Invalid flat number or password.")

    with admin_tab:
        col1, col2 = st.columns([1, 1])
        with col1:
            username = st.text_input("Username", value="admin")
            password = st.text_input("Password", type="password", key="admin_pw")
            if st.button("Login as admin", type="primary"):
                if auth.login(username.strip(), password):
                    st.session_state.logged_in = True
                    st.session_state.role = "admin"
                    st.session_state.username = username.strip()
                    st.rerun()
                else:
                    st.error("Invalid username or password.")
        with col2:
            st.info(
                "First run creates a default admin:\n\n"
                "- username: **admin**\n"
                "- password: **admin123**\n\n"
                "You will be forced to change it on first login."
            )


def force_change_password_screen():
    st.title("⚠️ Change Password (Required)")

    st.warning("You must change the default password before using the app.")
    new1 = st.text_input("New password", type="password")
    new2 = st.text_input("Confirm new password", type="password")

    if st.button("Update password", type="primary"):
        errors = auth.validate_new_password(new1, new2)
        for e in errors:
            st.error(e)
        if errors:
            return
        auth.change_password(st.session_state.username, new1)
        st.success("Password updated. You can continue.")
        st.rerun()


def periods_frame(periods) -> pd.DataFrame:
    df = pd.DataFrame([p.as_dict() for p in periods])
    if df.empty:
        return pd.DataFrame(columns=["id", "label", "due_date", "base_amount", "penalty_amount", "total_amount", "is_overdue"])
    df["due_date"] = df["due_date"].dt.date
    return df


# ---------- Admin pages ----------

def dashboard_page():
    st.header("📊 Dashboard")

    clock = get_clock()
    unit = db.get_penalty_unit()
    members = db.list_members(recurring_only=True)

    overdue_rows = []
    for m in members:
        quote = payments.quote_member_dues(m, limit=1, unit=unit, clock=clock)
        nxt = quote["next_period"]
        if nxt and nxt.is_overdue:
            overdue_rows.append({
                "flat_number": m["flat_number"],
                "member_name": m["member_name"],
                "period": nxt.label,
                "due_date": nxt.due_date.date(),
                "penalty": nxt.penalty_amount,
                "total": nxt.total_amount,
            })

    now = clock.now()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    monthly_rev = db.fetch_one(
        "SELECT COALESCE(SUM(COALESCE(total_amount, amount)),0) AS s FROM transactions "
        "WHERE status='paid' AND paid_at >= ? AND paid_at < ?",
        (month_start.isoformat(), utils.add_months(month_start, 1).isoformat()),
    )["s"]

    c1, c2, c3 = st.columns(3)
    c1.metric("Flats on recurring dues", len(members))
    c2.metric("Flats overdue", len(overdue_rows))
    c3.metric("Collected this month", f"{float(monthly_rev):.2f} {config.CURRENCY}")

    st.divider()

    st.subheader("Overdue flats")
    if overdue_rows:
        st.dataframe(pd.DataFrame(overdue_rows), use_container_width=True, hide_index=True)
    else:
        st.caption("No overdue flats.")


def member_form(existing=None):
    if existing:
        st.subheader(f"✏️ Edit Member (Flat {existing['flat_number']})")
    else:
        st.subheader("➕ Add Member")

    col1, col2, col3 = st.columns(3)
    with col1:
        society_name = st.text_input("Society name", value=(existing["society_name"] if existing else ""))
        flat_number = st.text_input("Flat number", value=(existing["flat_number"] if existing else ""))
        wing = st.text_input("Wing (optional)", value=(existing["wing"] or "" if existing else ""))
        floor = st.text_input("Floor (optional)", value=(existing["floor"] or "" if existing else ""))

    with col2:
        member_name = st.text_input("Member name", value=(existing["member_name"] if existing else ""))
        phone = st.text_input("Phone (optional)", value=(existing["phone"] or "" if existing else ""))
        email = st.text_input("Email (optional)", value=(existing["email"] or "" if existing else ""))
        password = st.text_input("Set member password (optional)", type="password")

    with col3:
        maintenance_type = st.selectbox(
            "Maintenance type",
            options=list(MAINTENANCE_TYPES),
            index=(MAINTENANCE_TYPES.index(existing["maintenance_type"]) if existing else 0),
        )
        maintenance_amount = st.text_input(
            "Maintenance amount", value=(str(existing["maintenance_amount"]) if existing else "1500")
        )
        due_day = st.number_input(
            "Due day of month (0 = none)", min_value=0, max_value=31,
            value=int(existing["due_day_of_month"] or 0) if existing else 5,
        )
        recurring = st.toggle(
            "Recurring dues enabled", value=bool(existing["recurring_due_enabled"]) if existing else True
        )
        stored_next = utils.to_datetime(existing["next_due_date"]) if existing else None
        pin_next = st.checkbox("Set next due date explicitly", value=stored_next is not None)
        next_due = st.date_input(
            "Next due date", value=(stored_next.date() if stored_next else date.today()), disabled=not pin_next
        )

    errors = utils.validate_member_inputs(
        society_name, flat_number, member_name, phone, email,
        maintenance_amount, due_day or None, recurring, next_due if pin_next else None,
    )
    if errors:
        for e in errors:
            st.error(e)

    submitted = st.button("Save", type="primary", disabled=bool(errors))

    if submitted:
        data = dict(
            society_name=society_name.strip(),
            flat_number=flat_number.strip(),
            wing=wing.strip() or None,
            floor=floor.strip() or None,
            member_name=member_name.strip(),
            phone=phone.strip() or None,
            email=email.strip() or None,
            maintenance_type=maintenance_type,
            maintenance_amount=float(maintenance_amount),
        )
        try:
            data.update(payments.schedule_fields(
                recurring, due_day or None, next_due if pin_next else None, get_clock()
            ))
        except payments.ValidationError as exc:
            for e in exc.errors:
                st.error(e)
            return

        member_id = db.save_member(data, existing["id"] if existing else None)
        if password:
            auth.set_member_password(member_id, password)
        st.success("Member updated." if existing else "Member added.")
        st.rerun()


def members_page():
    st.header("👥 Members")

    with st.sidebar:
        st.subheader("Search & Filters")
        search = st.text_input("Search (name/flat/phone/society)")
        recurring_only = st.checkbox("Recurring dues only", value=False)

    rows = db.list_members(search=search, recurring_only=recurring_only)
    df = pd.DataFrame([dict(r) for r in rows]).drop(columns=["password_hash"], errors="ignore") if rows else pd.DataFrame(columns=[
        "id", "society_name", "flat_number", "member_name", "phone", "maintenance_amount",
        "due_day_of_month", "next_due_date", "recurring_due_enabled",
    ])
    st.dataframe(df, use_container_width=True, hide_index=True)

    st.divider()

    colA, colB = st.columns([1, 2])
    with colA:
        st.subheader("Select member")
        member_ids = df["id"].tolist() if not df.empty else []
        selected_id = st.selectbox("Member ID", options=["(none)"] + [str(i) for i in member_ids])

    with colB:
        if selected_id != "(none)":
            st.subheader("Member actions")
            c1, c2, c3 = st.columns(3)
            with c1:
                if st.button("Edit"):
                    st.session_state.edit_member_id = int(selected_id)
                    st.rerun()
            with c2:
                if st.button("View dues"):
                    st.session_state.dues_member_id = int(selected_id)
                    st.session_state.page = "Dues"
                    st.rerun()
            with c3:
                delete_confirm = st.checkbox("Confirm delete", value=False, key="del_confirm")
                if st.button("Delete", type="secondary", disabled=not delete_confirm):
                    db.delete_member(int(selected_id))
                    st.success("Member deleted.")
                    st.rerun()

    st.divider()

    if st.session_state.get("edit_member_id"):
        existing = db.get_member(st.session_state.edit_member_id)
        if existing:
            member_form(existing=existing)
        if st.button("Cancel edit"):
            st.session_state.edit_member_id = None
            st.rerun()
    else:
        member_form(existing=None)


def pay_panel(member):
    """Create an order for the member's earliest period and run the demo checkout."""
    clock = get_clock()
    unit = db.get_penalty_unit()
    quote = payments.quote_member_dues(member, limit=1, unit=unit, clock=clock)
    nxt = quote["next_period"]
    if nxt:
        st.write(
            f"Next bill: **{nxt.label}** due **{nxt.due_date.date()}** | "
            f"Base **{nxt.base_amount:.2f}** + Penalty **{nxt.penalty_amount:.2f}** = **{nxt.total_amount:.2f}**"
        )
    amount = st.text_input("Amount to pay", value=f"{nxt.total_amount:.2f}" if nxt else "")
    notes = st.text_input("Notes", value="")

    if st.button("Pay now", type="primary"):
        gateway = get_gateway()
        try:
            order = payments.create_maintenance_order(
                gateway, member, submitted_amount=amount, notes=notes.strip() or None, unit=unit, clock=clock
            )
            payment_id, signature = gateway.simulate_checkout(order["id"])
            result = payments.verify_payment(gateway, order["id"], payment_id, signature, unit=unit, clock=clock)
        except payments.PaymentError as exc:
            for e in getattr(exc, "errors", [str(exc)]):
                st.error(e)
            return
        if result["verified"]:
            st.success(f"Payment received. Receipt: {result['transaction_details']['receipt_id']}")
            st.rerun()
        else:
            st.error("Payment could not be verified.")


def dues_page():
    st.header("📅 Dues")

    members = db.list_members()
    if not members:
        st.info("No members yet. Add a member first.")
        return

    default_member_id = st.session_state.get("dues_member_id", members[0]["id"])
    options = {f"{m['flat_number']} - {m['member_name']} ({m['society_name']})": m["id"] for m in members}
    label_list = list(options.keys())
    default_index = label_list.index(next(k for k, v in options.items() if v == default_member_id)) if default_member_id in options.values() else 0
    chosen_label = st.selectbox("Member", label_list, index=default_index)
    member_id = options[chosen_label]
    st.session_state.dues_member_id = member_id
    member = db.get_member(member_id)

    limit = st.slider("Periods to show", min_value=1, max_value=billing.MAX_PERIOD_LIMIT, value=billing.DEFAULT_PERIOD_LIMIT)
    periods = billing.pending_periods(member, limit=limit, unit=db.get_penalty_unit(), clock=get_clock())
    if periods:
        st.dataframe(periods_frame(periods), use_container_width=True, hide_index=True)
    else:
        st.caption("No upcoming periods (recurring dues disabled and no due day).")

    st.divider()

    c1, c2 = st.columns(2)
    with c1:
        st.subheader("Collect payment")
        pay_panel(member)
    with c2:
        st.subheader("Schedule")
        if member["recurring_due_enabled"]:
            st.write(f"Next due date: **{member['next_due_date'] or 'not set'}**")
            if st.button("Disable recurring dues"):
                db.set_recurring(member_id, False)
                st.rerun()
        elif st.button("Enable recurring dues"):
            try:
                fields = payments.schedule_fields(True, member["due_day_of_month"], clock=get_clock())
            except payments.ValidationError as exc:
                st.error(exc.errors[0])
            else:
                db.set_recurring(member_id, True, fields["next_due_date"])
                st.rerun()


def transactions_page():
    st.header("💳 Transactions")

    with st.sidebar:
        st.subheader("Filters")
        society = st.text_input("Society")
        flat = st.text_input("Flat number")
        status = st.selectbox("Status", ["All"] + list(TRANSACTION_STATUSES))
        page = st.number_input("Page", min_value=1, value=1)

    history = payments.payment_history(
        limit=25,
        page=page,
        unit=db.get_penalty_unit(),
        clock=get_clock(),
        society_name=society or None,
        flat_number=flat.strip() or None,
        status=None if status == "All" else status,
    )
    rows = history["transactions"]
    if rows:
        df = pd.DataFrame(rows)
        breakdown = pd.json_normalize(df.pop("breakdown")).add_prefix("calc_")
        st.dataframe(pd.concat([df, breakdown], axis=1), use_container_width=True, hide_index=True)
        p = history["pagination"]
        st.caption(f"Page {p['page']} of {p['total_pages']} ({p['total']} records)")
    else:
        st.caption("No transactions match.")

    st.divider()

    st.subheader("Receipt lookup")
    order_id = st.text_input("Order ID")
    if order_id.strip():
        try:
            st.json(payments.payment_receipt(order_id.strip(), unit=db.get_penalty_unit(), clock=get_clock()))
        except payments.TransactionNotFound:
            st.error("Transaction not found.")


def reports_page():
    st.header("🧾 Reports")

    st.subheader("Export members to CSV")
    members = db.list_members()
    if members:
        st.download_button(
            "Download members.csv",
            data=utils.members_to_csv_bytes(members),
            file_name="members.csv",
            mime="text/csv",
        )
    else:
        st.caption("No members to export.")

    st.divider()

    st.subheader("Export transactions to CSV")
    txs = db.list_transactions()
    if txs:
        st.download_button(
            "Download transactions.csv",
            data=utils.transactions_to_csv_bytes(txs),
            file_name="transactions.csv",
            mime="text/csv",
        )
    else:
        st.caption("No transactions to export.")

    st.divider()

    st.subheader("Revenue summary by month")
    st.dataframe(utils.revenue_summary_by_month(), use_container_width=True, hide_index=True)

    st.divider()

    st.subheader("Society summary")
    society = st.text_input("Society name", key="summary_society")
    if society.strip():
        summary = payments.society_summary(society.strip())
        st.write(f"Flats billed: **{summary['total_flats']}**")
        st.dataframe(pd.DataFrame(summary["payment_summary"]), use_container_width=True, hide_index=True)

        pending = payments.pending_payments(society.strip(), unit=db.get_penalty_unit(), clock=get_clock())
        st.write(f"Pending bills: **{pending['count']}**")
        if pending["pending_payments"]:
            st.dataframe(pd.DataFrame(pending["pending_payments"]), use_container_width=True, hide_index=True)


def settings_page():
    st.header("⚙️ Settings")

    st.subheader("Late payment penalty")
    unit = st.number_input("Penalty per full month overdue", min_value=0.0, value=float(db.get_penalty_unit()), step=10.0)
    if st.button("Save penalty"):
        db.set_penalty_unit(unit)
        st.success("Penalty updated.")

    st.divider()

    st.subheader("Change password")
    p1 = st.text_input("New password", type="password")
    p2 = st.text_input("Confirm new password", type="password")
    if st.button("Update password", type="primary"):
        errors = auth.validate_new_password(p1, p2)
        for e in errors:
            st.error(e)
        if not errors:
            auth.change_password(st.session_state.username, p1)
            st.success("Password updated.")

    st.divider()

    st.subheader("Sample data")
    st.caption("Insert 3 sample flats and a couple of billing records for testing.")
    if st.button("Insert sample data"):
        utils.insert_sample_data(get_clock())
        st.success("Sample data inserted.")
        st.rerun()


# ---------- Member portal ----------

def member_portal():
    member = db.get_member(st.session_state.member_id)
    if member is None:
        logout()
        st.rerun()
        return

    st.sidebar.title("🏢 My Flat")
    st.sidebar.caption(f"{member['society_name']} / {member['flat_number']}")
    if st.sidebar.button("Logout"):
        logout()
        st.rerun()

    st.header(f"Welcome, {member['member_name']}")
    quote = payments.quote_member_dues(member, unit=db.get_penalty_unit(), clock=get_clock())
    c1, c2 = st.columns(2)
    c1.metric("Monthly due", f"{float(member['maintenance_amount']):.2f} {config.CURRENCY}")
    c2.metric("Overdue", f"{quote['overdue_total']:.2f} {config.CURRENCY}")

    st.subheader("Upcoming periods")
    st.dataframe(periods_frame(quote["periods"]), use_container_width=True, hide_index=True)

    st.subheader("Pay")
    pay_panel(member)

    st.subheader("Payment history")
    history = payments.payment_history(
        limit=50, unit=db.get_penalty_unit(), clock=get_clock(), member_id=member["id"]
    )
    if history["transactions"]:
        st.dataframe(pd.DataFrame(history["transactions"]).drop(columns=["breakdown"]), use_container_width=True, hide_index=True)
    else:
        st.caption("No payments yet.")


def main_app():
    st.sidebar.title("🏢 Society Admin")
    st.sidebar.caption(f"Logged in as: {st.session_state.username}")

    pages = ["Dashboard", "Members", "Dues", "Transactions", "Reports", "Settings"]
    if "page" not in st.session_state:
        st.session_state.page = "Dashboard"
    st.session_state.page = st.sidebar.radio("Navigate", pages, index=pages.index(st.session_state.page))

    if st.sidebar.button("Logout"):
        logout()
        st.rerun()

    if st.session_state.page == "Dashboard":
        dashboard_page()
    elif st.session_state.page == "Members":
        members_page()
    elif st.session_state.page == "Dues":
        dues_page()
    elif st.session_state.page == "Transactions":
        transactions_page()
    elif st.session_state.page == "Reports":
        reports_page()
    elif st.session_state.page == "Settings":
        settings_page()


# --------- App entry ---------

def run():
    init_once()
    require_login()

    if not st.session_state.logged_in:
        login_screen()
        return

    if st.session_state.role == "member":
        member_portal()
        return

    # Force password change on first login after DB creation
    if db.is_force_password_change():
        force_change_password_screen()
        return

    main_app()


if __name__ == "__main__":
    run()
