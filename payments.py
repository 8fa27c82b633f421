"""
payments.py
Maintenance payment workflow: order creation, gateway signature verification,
recording payments and rolling member schedules forward, plus the history,
receipt, pending and summary queries the portal shows.

The gateway client is created once by the caller and passed in.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import math
import re
import secrets
from typing import Protocol

import pandas as pd

import billing
import config
import db
import utils
from utils import Clock

logger = logging.getLogger(__name__)

MAX_ADVANCE_ATTEMPTS = 3
MAX_PAGE_SIZE = 100


class PaymentError(Exception):
    pass


class ValidationError(PaymentError):
    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class TransactionNotFound(PaymentError):
    pass


class PaymentGateway(Protocol):
    key_id: str

    def create_order(self, amount_minor: int, currency: str, receipt: str, notes: dict) -> dict: ...

    def signature(self, order_id: str, payment_id: str) -> str: ...


class DemoGateway:
    """
    Offline stand-in for a hosted checkout. Orders are local dicts and
    signatures are HMAC-SHA256 over "order_id|payment_id".
    """

    def __init__(self, key_id: str = config.GATEWAY_KEY_ID, secret: str = config.GATEWAY_SECRET):
        self.key_id = key_id
        self._secret = secret.encode("utf-8")

    def create_order(self, amount_minor: int, currency: str, receipt: str, notes: dict) -> dict:
        return {
            "id": f"order_{secrets.token_hex(7)}",
            "entity": "order",
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "status": "created",
            "notes": notes,
        }

    def signature(self, order_id: str, payment_id: str) -> str:
        body = f"{order_id}|{payment_id}".encode("utf-8")
        return hmac.new(self._secret, body, hashlib.sha256).hexdigest()

    def simulate_checkout(self, order_id: str) -> tuple[str, str]:
        """What the hosted checkout would hand back after a successful payment."""
        payment_id = f"pay_{secrets.token_hex(7)}"
        return payment_id, self.signature(order_id, payment_id)


def make_receipt_id(society_name: str, flat_number: str, clock: Clock | None = None) -> str:
    millis = int((clock or Clock()).now().timestamp() * 1000)
    society = re.sub(r"\s+", "_", society_name.strip()).upper()
    return f"{society}_{flat_number.strip()}_{millis}"


def schedule_fields(recurring_due_enabled: bool, due_day_of_month=None, next_due_date=None,
                    clock: Clock | None = None) -> dict:
    """
    Member columns for a schedule change. Enabling pins the first due date;
    disabling clears it.
    """
    if not recurring_due_enabled:
        return {
            "recurring_due_enabled": False,
            "due_day_of_month": utils.to_day(due_day_of_month),
            "next_due_date": None,
        }
    first_due = billing.resolve_next_due_date(due_day_of_month, next_due_date, None, clock)
    if first_due is None:
        raise ValidationError(["Recurring dues need a due day or a next due date."])
    return {
        "recurring_due_enabled": True,
        "due_day_of_month": utils.to_day(due_day_of_month),
        "next_due_date": first_due,
    }


def quote_member_dues(member, limit=None, reference_date=None, unit=None,
                      clock: Clock | None = None) -> dict:
    """What a member owes now: upcoming periods and the bill for the earliest one."""
    periods = billing.pending_periods(member, limit, reference_date, unit, clock)
    overdue = [p for p in periods if p.is_overdue]
    return {
        "periods": periods,
        "next_period": periods[0] if periods else None,
        "overdue_count": len(overdue),
        "overdue_total": utils.non_negative(sum(p.total_amount for p in overdue)),
    }


def create_maintenance_order(
    gateway: PaymentGateway,
    member,
    payment_period: str | None = None,
    submitted_amount=None,
    maintenance_type: str | None = None,
    notes: str | None = None,
    currency: str = config.CURRENCY,
    unit=None,
    clock: Clock | None = None,
) -> dict:
    """
    Bill the member's earliest pending period. The server-side breakdown is
    stored on the transaction; the charged amount is what the member submitted
    (or the server total when nothing was submitted).
    """
    clock = clock or Clock()
    if member is None:
        raise ValidationError(["Member not found."])

    period = next(billing.iter_pending_periods(member, 1, clock.now(), unit, clock), None)
    maintenance_type = maintenance_type or member["maintenance_type"] or "monthly"
    if period is not None:
        base, penalty, total = period.base_amount, period.penalty_amount, period.total_amount
        due_date = period.due_date
        payment_period = payment_period or utils.payment_period_name(due_date, maintenance_type)
    else:
        base = utils.non_negative(utils.to_money(member["maintenance_amount"]))
        penalty, total, due_date = 0.0, base, None

    amount = total if submitted_amount in (None, "") else submitted_amount

    errors = utils.validate_order_inputs(amount, maintenance_type, payment_period or "", clock=clock)
    if errors:
        raise ValidationError(errors)
    amount = utils.to_money(amount)

    # TODO: decide with the committee whether to charge the server total instead
    if not math.isclose(amount, total, abs_tol=0.005):
        logger.warning(
            "Amount mismatch for flat %s: submitted %.2f, computed %.2f",
            member["flat_number"], amount, total,
        )

    receipt = make_receipt_id(member["society_name"], member["flat_number"], clock)
    order = gateway.create_order(
        int(round(amount * 100)),
        currency,
        receipt,
        {
            "society_name": member["society_name"],
            "flat_number": member["flat_number"],
            "member_name": member["member_name"],
            "maintenance_type": maintenance_type,
            "payment_period": payment_period,
        },
    )

    db.insert_transaction(dict(
        order_id=order["id"],
        receipt=receipt,
        member_id=member["id"],
        society_name=member["society_name"],
        flat_number=member["flat_number"],
        wing=member["wing"],
        floor=member["floor"],
        member_name=member["member_name"],
        member_phone=member["phone"],
        member_email=member["email"],
        amount=amount,
        base_amount=base,
        penalty_amount=penalty,
        total_amount=total,
        currency=currency,
        maintenance_type=maintenance_type,
        payment_period=payment_period,
        due_date=due_date,
        status="created",
        created_at=clock.now(),
        notes=notes,
    ))
    logger.info("Created order %s for flat %s (%.2f %s)", order["id"], member["flat_number"], amount, currency)

    return {
        **order,
        "bill_details": {
            "society_name": member["society_name"],
            "flat_number": member["flat_number"],
            "member_name": member["member_name"],
            "maintenance_type": maintenance_type,
            "payment_period": payment_period,
            "maintenance_amount": base,
            "penalty_amount": penalty,
            "total_amount": total,
            "receipt_id": receipt,
            "due_date": due_date,
        },
    }


def _mark_paid(order_id: str, payment_id: str, breakdown, paid_at) -> bool:
    changed = db.execute_count(
        """
        UPDATE transactions
        SET payment_id=?, status='paid', paid_at=?, payment_method='gateway',
            base_amount=?, penalty_amount=?, total_amount=?
        WHERE order_id=? AND status != 'paid'
        """,
        (payment_id, db.to_db_value(paid_at), breakdown.base, breakdown.penalty, breakdown.total, order_id),
    )
    return changed == 1


def advance_schedule(member_id: int, fallback_base=None, clock: Clock | None = None):
    """
    Move a member's next due date one month forward. Re-reads and retries when
    a concurrent payment advanced it first, so no advance is lost.
    """
    clock = clock or Clock()
    for _ in range(MAX_ADVANCE_ATTEMPTS):
        member = db.get_member(member_id)
        if member is None or not member["recurring_due_enabled"]:
            return None
        current = member["next_due_date"]
        new_due = billing.next_due_date_after(
            utils.to_datetime(current, clock) or utils.to_datetime(fallback_base, clock),
            member["due_day_of_month"],
            clock,
        )
        if db.advance_member_due_date(member_id, current, new_due):
            logger.info("Advanced flat %s next due date to %s", member["flat_number"], new_due.date())
            return new_due
    logger.warning("Could not advance due date for member %s after %d attempts", member_id, MAX_ADVANCE_ATTEMPTS)
    return None


def verify_payment(gateway: PaymentGateway, order_id: str, payment_id: str, signature: str,
                   unit=None, clock: Clock | None = None) -> dict:
    clock = clock or Clock()
    if not order_id or not payment_id or not signature:
        raise ValidationError(["order_id, payment_id and signature are required."])

    expected = gateway.signature(order_id, payment_id)
    if not hmac.compare_digest(expected, signature):
        logger.warning("Signature mismatch for order %s", order_id)
        db.execute(
            "UPDATE transactions SET status='failed' WHERE order_id=? AND status='created'",
            (order_id,),
        )
        return {"verified": False}

    tx = db.get_transaction(order_id)
    if tx is None:
        raise TransactionNotFound(order_id)

    next_due = None
    if tx["status"] != "paid":
        paid_at = clock.now()
        # Penalty stops accruing here; the stored amounts are final from now on
        breakdown = billing.reconcile_amounts(tx, paid_at, dynamic_penalty=True, unit=unit, clock=clock)
        if _mark_paid(order_id, payment_id, breakdown, paid_at):
            logger.info("Payment %s verified for order %s", payment_id, order_id)
            if tx["member_id"] is not None:
                next_due = advance_schedule(tx["member_id"], tx["due_date"], clock)
        tx = db.get_transaction(order_id)

    return {
        "verified": True,
        "transaction_details": {
            "society_name": tx["society_name"],
            "flat_number": tx["flat_number"],
            "member_name": tx["member_name"],
            "maintenance_type": tx["maintenance_type"],
            "payment_period": tx["payment_period"],
            "amount": tx["amount"],
            "base_amount": tx["base_amount"],
            "penalty_amount": tx["penalty_amount"],
            "total_amount": tx["total_amount"],
            "paid_at": tx["paid_at"],
            "receipt_id": tx["receipt"],
        },
        "next_due_date": next_due,
    }


def _with_breakdown(row, reference_date=None, unit=None, clock: Clock | None = None) -> dict:
    item = dict(row)
    item["breakdown"] = billing.reconcile_amounts(row, reference_date, unit=unit, clock=clock).as_dict()
    return item


def payment_history(limit=10, page=1, unit=None, clock: Clock | None = None, **filters) -> dict:
    limit = max(1, min(int(limit), MAX_PAGE_SIZE))
    page = max(1, int(page))
    rows = db.list_transactions(limit=limit, offset=(page - 1) * limit, **filters)
    total = db.count_transactions(**filters)
    return {
        "transactions": [_with_breakdown(r, unit=unit, clock=clock) for r in rows],
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit),
        },
    }


def payment_receipt(order_id: str, unit=None, clock: Clock | None = None) -> dict:
    tx = db.get_transaction(order_id)
    if tx is None:
        raise TransactionNotFound(order_id)
    amounts = billing.reconcile_amounts(tx, unit=unit, clock=clock)
    return {
        "receipt_id": tx["receipt"],
        "order_id": tx["order_id"],
        "payment_id": tx["payment_id"],
        "society_details": {
            "society_name": tx["society_name"],
            "flat_number": tx["flat_number"],
            "wing": tx["wing"],
            "floor": tx["floor"],
        },
        "member_details": {
            "name": tx["member_name"],
            "phone": tx["member_phone"],
            "email": tx["member_email"],
        },
        "payment_details": {
            "maintenance_type": tx["maintenance_type"],
            "payment_period": tx["payment_period"],
            "due_date": tx["due_date"],
            "paid_at": tx["paid_at"],
            "status": tx["status"],
            "payment_method": tx["payment_method"],
        },
        "maintenance_bill": {
            "maintenance_amount": amounts.base,
            "penalty_amount": amounts.penalty,
            "total_amount": amounts.total,
            "description": f"{tx['maintenance_type']} maintenance for {tx['payment_period']}",
        },
        "notes": tx["notes"],
        "created_at": tx["created_at"],
    }


def pending_payments(society_name: str, flat_number: str | None = None, due_before=None,
                     unit=None, clock: Clock | None = None) -> dict:
    if not society_name or not society_name.strip():
        raise ValidationError(["society_name is required."])
    due_before = utils.to_datetime(due_before, clock) if due_before else None
    rows = db.list_transactions(
        order_by="due_date ASC, created_at DESC",
        society_name=society_name,
        flat_number=flat_number,
        status="created",
        due_before=due_before,
    )
    now = (clock or Clock()).now()
    items = [_with_breakdown(r, now, unit, clock) for r in rows]
    return {"pending_payments": items, "count": len(items)}


def society_summary(society_name: str) -> dict:
    rows = db.list_transactions(society_name=society_name)
    df = pd.DataFrame([dict(r) for r in rows])
    if df.empty:
        return {"society_name": society_name, "total_flats": 0, "payment_summary": [], "flat_numbers": []}

    totals = pd.to_numeric(df["total_amount"], errors="coerce")
    df["charged"] = totals.fillna(pd.to_numeric(df["amount"], errors="coerce")).fillna(0.0)
    summary = (
        df.groupby("status")
        .agg(count=("order_id", "count"), total_amount=("charged", "sum"))
        .reset_index()
    )
    flats = sorted(df["flat_number"].dropna().unique().tolist())
    return {
        "society_name": society_name,
        "total_flats": len(flats),
        "payment_summary": summary.to_dict(orient="records"),
        "flat_numbers": flats,
    }
