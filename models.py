"""
models.py
Domain records for the dues engine (member schedule, transaction, billing period).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Any, Mapping

MAINTENANCE_TYPES = ("monthly", "quarterly", "annual")
TRANSACTION_STATUSES = ("created", "paid", "failed", "refunded")

# Projection window for upcoming periods
DEFAULT_PERIOD_LIMIT = 12
MAX_PERIOD_LIMIT = 24

# Stored values may be strings (SQLite), date/datetime objects, or junk from old rows
DateLike = date | datetime | str | None
MoneyLike = float | int | str | None


def _pick(record: Any, key: str, default: Any = None) -> Any:
    if record is None:
        return default
    if isinstance(record, Mapping):
        return record.get(key, default)
    try:
        # sqlite3.Row supports keys() and item access but is not a Mapping
        if key in record.keys():
            return record[key]
    except (AttributeError, TypeError):
        pass
    return getattr(record, key, default)


@dataclass(frozen=True)
class MemberSchedule:
    """The recurring-billing slice of a member record."""

    due_day_of_month: int | str | float | None = None
    next_due_date: DateLike = None
    recurring_due_enabled: bool = False
    maintenance_amount: MoneyLike = None

    @classmethod
    def from_record(cls, record: Any) -> "MemberSchedule":
        if isinstance(record, cls):
            return record
        return cls(
            due_day_of_month=_pick(record, "due_day_of_month"),
            next_due_date=_pick(record, "next_due_date"),
            recurring_due_enabled=bool(_pick(record, "recurring_due_enabled", False)),
            maintenance_amount=_pick(record, "maintenance_amount"),
        )


@dataclass(frozen=True)
class Transaction:
    """
    One billing record. Every money field is optional: rows written before the
    base/penalty/total split only carry `amount`.
    """

    status: str = "created"
    due_date: DateLike = None
    base_amount: MoneyLike = None
    penalty_amount: MoneyLike = None
    total_amount: MoneyLike = None
    amount: MoneyLike = None
    paid_at: DateLike = None

    @classmethod
    def from_record(cls, record: Any) -> "Transaction":
        if isinstance(record, cls):
            return record
        return cls(
            status=str(_pick(record, "status") or "created"),
            due_date=_pick(record, "due_date"),
            base_amount=_pick(record, "base_amount"),
            penalty_amount=_pick(record, "penalty_amount"),
            total_amount=_pick(record, "total_amount"),
            amount=_pick(record, "amount"),
            paid_at=_pick(record, "paid_at"),
        )

    @property
    def is_paid(self) -> bool:
        return self.status == "paid"


@dataclass(frozen=True)
class AmountBreakdown:
    base: float
    penalty: float
    total: float

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class BillingPeriod:
    id: str  # YYYY-MM, sortable
    label: str  # e.g. "January 2025"
    due_date: datetime
    base_amount: float
    penalty_amount: float
    total_amount: float
    is_overdue: bool

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)
