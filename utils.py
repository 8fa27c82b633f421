"""
utils.py
Calendar helpers, value coercion, validation, exports, sample data.
"""

from __future__ import annotations

import math
import re
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

import pandas as pd

import config
import db
from models import MAINTENANCE_TYPES

MONTH_NAMES = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

PHONE_RE = re.compile(r"^[6-9]\d{9}$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MONTHLY_PERIOD_RE = re.compile(r"^(%s)\s+\d{4}$" % "|".join(MONTH_NAMES))
QUARTERLY_PERIOD_RE = re.compile(r"^Q[1-4]\s+\d{4}$")
ANNUAL_PERIOD_RE = re.compile(r"^\d{4}$")

MAX_AMOUNT = 999_999


# ---------- Clock ----------

@dataclass(frozen=True)
class Clock:
    """
    The one calendar every due date is computed on. Returns naive datetimes
    expressed in `timezone`.
    """

    timezone: str = field(default=config.TIMEZONE, kw_only=True)

    def now(self) -> datetime:
        return datetime.now(ZoneInfo(self.timezone)).replace(tzinfo=None)

    def localize(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value
        return value.astimezone(ZoneInfo(self.timezone)).replace(tzinfo=None)


@dataclass(frozen=True)
class FixedClock(Clock):
    """Clock pinned to one instant (tests, back-dated reports)."""

    instant: datetime

    def now(self) -> datetime:
        return self.localize(self.instant)


# ---------- Coercion (never raises) ----------

def to_datetime(value, clock: Clock | None = None) -> datetime | None:
    """
    Best-effort conversion of a stored/user value into a naive datetime on the
    clock's calendar. Anything unparseable becomes None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return (clock or Clock()).localize(value)
    if isinstance(value, date):
        return datetime.combine(value, time())
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return (clock or Clock()).localize(parsed)
    return None


def to_day(value) -> int | None:
    """Due day of month (1-31) or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            return None
        value = int(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text.isdigit():
            return None
        value = int(text)
    elif not isinstance(value, int):
        return None
    return value if 1 <= value <= 31 else None


def to_money(value) -> float | None:
    """Finite float or None. Sign is preserved; callers clamp."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def non_negative(value: float | None) -> float:
    if value is None or not math.isfinite(value) or value < 0:
        return 0.0
    return round(value, 2)


# ---------- Calendar arithmetic ----------

def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - timedelta(days=1)).day


def clamp_day(year: int, month: int, day: int) -> int:
    return min(day, days_in_month(year, month))


def add_months(start, months: int, day: int | None = None):
    """
    Add months while keeping day in valid range (e.g., Jan 31 + 1 month => Feb 28/29).
    Works for date and datetime; `day` overrides the day-of-month to aim for.
    """
    y = start.year + (start.month - 1 + months) // 12
    m = (start.month - 1 + months) % 12 + 1
    return start.replace(year=y, month=m, day=clamp_day(y, m, day or start.day))


def end_of_day(value: datetime) -> datetime:
    return value.replace(hour=23, minute=59, second=59, microsecond=999000)


def period_id(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def period_label(value: date) -> str:
    return f"{MONTH_NAMES[value.month - 1]} {value.year}"


def payment_period_name(value: date, maintenance_type: str = "monthly") -> str:
    """Period name in the format `validate_payment_period` expects for the type."""
    if maintenance_type == "quarterly":
        return f"Q{(value.month - 1) // 3 + 1} {value.year}"
    if maintenance_type == "annual":
        return str(value.year)
    return period_label(value)


# ---------- Validation ----------

def validate_payment_period(payment_period: str, maintenance_type: str) -> list[str]:
    if not isinstance(payment_period, str) or not payment_period.strip():
        return ["Payment period is required."]
    period = payment_period.strip()
    if maintenance_type == "monthly" and not MONTHLY_PERIOD_RE.match(period):
        return ['Monthly payment period must look like "January 2025".']
    if maintenance_type == "quarterly" and not QUARTERLY_PERIOD_RE.match(period):
        return ['Quarterly payment period must look like "Q1 2025".']
    if maintenance_type == "annual" and not ANNUAL_PERIOD_RE.match(period):
        return ['Annual payment period must look like "2025".']
    return []


def validate_member_inputs(
    society_name: str,
    flat_number: str,
    member_name: str,
    phone: str,
    email: str,
    maintenance_amount,
    due_day_of_month,
    recurring_due_enabled: bool,
    next_due_date=None,
) -> list[str]:
    errors: list[str] = []
    if not society_name.strip():
        errors.append("Society name is required.")
    elif len(society_name) > 100:
        errors.append("Society name cannot exceed 100 characters.")
    if not flat_number.strip():
        errors.append("Flat number is required.")
    elif len(flat_number) > 10:
        errors.append("Flat number cannot exceed 10 characters.")
    if not member_name.strip():
        errors.append("Member name is required.")
    elif len(member_name) > 50:
        errors.append("Member name cannot exceed 50 characters.")
    if phone.strip() and not PHONE_RE.match(phone.strip()):
        errors.append("Phone must be a valid 10-digit mobile number.")
    if email.strip() and not EMAIL_RE.match(email.strip()):
        errors.append("Invalid email format.")

    amount = to_money(maintenance_amount)
    if amount is None or amount < 0:
        errors.append("Maintenance amount must be a non-negative number.")
    elif amount > MAX_AMOUNT:
        errors.append(f"Maintenance amount cannot exceed {MAX_AMOUNT}.")

    has_day = due_day_of_month not in (None, "")
    if has_day and to_day(due_day_of_month) is None:
        errors.append("Due day must be between 1 and 31.")
    if recurring_due_enabled and to_day(due_day_of_month) is None and to_datetime(next_due_date) is None:
        errors.append("Recurring dues need a due day or a next due date.")
    return errors


def validate_order_inputs(amount, maintenance_type: str, payment_period: str, due_date=None,
                          clock: Clock | None = None) -> list[str]:
    errors: list[str] = []
    if maintenance_type not in MAINTENANCE_TYPES:
        errors.append("Maintenance type must be one of: " + ", ".join(MAINTENANCE_TYPES))
    else:
        errors.extend(validate_payment_period(payment_period, maintenance_type))

    number = to_money(amount)
    if number is None or number <= 0:
        errors.append("Amount must be a positive number.")
    elif number > MAX_AMOUNT:
        errors.append(f"Amount cannot exceed {MAX_AMOUNT}.")

    if due_date not in (None, ""):
        due = to_datetime(due_date, clock)
        if due is None:
            errors.append("Invalid due date format.")
        elif due > add_months((clock or Clock()).now(), 12):
            errors.append("Due date cannot be more than one year in the future.")
    return errors


# ---------- Exports ----------

def members_to_csv_bytes(rows) -> bytes:
    df = pd.DataFrame([dict(r) for r in rows])
    df = df.drop(columns=["password_hash"], errors="ignore")
    return df.to_csv(index=False).encode("utf-8")


def transactions_to_csv_bytes(rows) -> bytes:
    df = pd.DataFrame([dict(r) for r in rows])
    return df.to_csv(index=False).encode("utf-8")


def revenue_summary_by_month() -> pd.DataFrame:
    rows = db.fetch_all(
        """
        SELECT substr(paid_at, 1, 7) AS month,
               SUM(COALESCE(total_amount, amount, 0)) AS revenue,
               SUM(COALESCE(penalty_amount, 0)) AS penalties,
               COUNT(*) AS payments
        FROM transactions
        WHERE status = 'paid' AND paid_at IS NOT NULL
        GROUP BY substr(paid_at, 1, 7)
        ORDER BY month DESC
        """
    )
    df = pd.DataFrame([dict(r) for r in rows])
    if df.empty:
        return pd.DataFrame(columns=["month", "revenue", "penalties", "payments"])
    return df


# ---------- Sample data ----------

def insert_sample_data(clock: Clock | None = None) -> None:
    """
    Insert 3 members and a few billing records (safe to run multiple times:
    flats already present are skipped).
    """
    now = (clock or Clock()).now()
    last_month = add_months(now, -1)

    members = [
        dict(society_name="Green Park", flat_number="A-101", wing="A", floor="1",
             member_name="Ravi Kumar", phone="9876543210", email="ravi@example.com",
             maintenance_amount=1500.0, due_day_of_month=5, recurring_due_enabled=True,
             next_due_date=end_of_day(last_month.replace(day=clamp_day(last_month.year, last_month.month, 5)))),
        dict(society_name="Green Park", flat_number="B-202", wing="B", floor="2",
             member_name="Anita Shah", phone="9123456780", email="",
             maintenance_amount=1200.0, due_day_of_month=31, recurring_due_enabled=True,
             next_due_date=None),
        dict(society_name="Green Park", flat_number="C-303", wing="C", floor="3",
             member_name="Omar Sheikh", phone="", email="",
             maintenance_amount=1000.0, due_day_of_month=None, recurring_due_enabled=False,
             next_due_date=None),
    ]

    for m in members:
        if db.get_member_by_flat(m["flat_number"]):
            continue
        db.save_member(m)

    # Old-schema paid record (only `amount`) and a new-schema pending one
    stamp = f"{int(now.timestamp() * 1000)}_{secrets.token_hex(3)}"
    db.insert_transaction(dict(
        order_id=f"order_sample_{stamp}_1", receipt=f"GREEN_PARK_C-303_{stamp}",
        society_name="Green Park", flat_number="C-303", member_name="Omar Sheikh",
        amount=1000.0, currency=config.CURRENCY, maintenance_type="monthly",
        payment_period=period_label(last_month), due_date=end_of_day(last_month),
        status="paid", paid_at=last_month, payment_method="cash",
    ))
    db.insert_transaction(dict(
        order_id=f"order_sample_{stamp}_2", receipt=f"GREEN_PARK_A-101_{stamp}",
        society_name="Green Park", flat_number="A-101", member_name="Ravi Kumar",
        amount=1500.0, base_amount=1500.0, currency=config.CURRENCY,
        maintenance_type="monthly", payment_period=period_label(last_month),
        due_date=end_of_day(last_month.replace(day=clamp_day(last_month.year, last_month.month, 5))),
        status="created",
    ))
