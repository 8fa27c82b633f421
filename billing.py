"""
billing.py
Recurring due and penalty engine.

Pure functions over value types: nothing here touches the database. Bad input
(junk dates, out-of-range days, missing money fields) is neutralized to
None / 0 instead of raising, because these functions run over historical rows
of inconsistent shape.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterator

import config
import utils
from models import (
    DEFAULT_PERIOD_LIMIT,
    MAX_PERIOD_LIMIT,
    AmountBreakdown,
    BillingPeriod,
    MemberSchedule,
    Transaction,
)
from utils import Clock, add_months, clamp_day, end_of_day, to_datetime, to_day, to_money

logger = logging.getLogger(__name__)


def _reference(reference_date, clock: Clock) -> datetime | None:
    if reference_date is None:
        return clock.now()
    return to_datetime(reference_date, clock)


def _unit(unit) -> float:
    value = to_money(config.PENALTY_PER_MONTH if unit is None else unit)
    return value if value is not None and value > 0 else 0.0


# ---------- Due-date resolver ----------

def upcoming_due_date(day, reference_date, clock: Clock | None = None) -> datetime | None:
    """
    Next occurrence of `day` on or after the reference day. A bill due today is
    not overdue until the day has fully elapsed.
    """
    clock = clock or Clock()
    due_day = to_day(day)
    reference = to_datetime(reference_date, clock)
    if due_day is None or reference is None:
        if day is not None and due_day is None:
            logger.debug("Ignoring invalid due day %r", day)
        return None

    reference = end_of_day(reference)
    candidate = reference.replace(day=clamp_day(reference.year, reference.month, due_day))
    if candidate >= reference:
        return candidate
    try:
        return end_of_day(add_months(reference, 1, day=due_day))
    except ValueError:
        return None


def next_due_date_after(base_date=None, day=None, clock: Clock | None = None) -> datetime:
    """
    Due date in the month after `base_date`'s month. Used to roll a member's
    schedule forward after a payment, so it always advances.
    """
    clock = clock or Clock()
    base = to_datetime(base_date, clock) or clock.now()
    due_day = to_day(day) or base.day
    try:
        return end_of_day(add_months(base, 1, day=due_day))
    except (OverflowError, ValueError):
        # No month after December 9999
        logger.debug("Cannot advance past %s", base)
        return end_of_day(base.replace(day=clamp_day(base.year, base.month, due_day)))


def resolve_next_due_date(day=None, explicit_date=None, reference_date=None,
                          clock: Clock | None = None) -> datetime | None:
    clock = clock or Clock()
    explicit = to_datetime(explicit_date, clock)
    if explicit is not None:
        return end_of_day(explicit)
    reference = _reference(reference_date, clock)
    if reference is None:
        return None
    return upcoming_due_date(day, reference, clock)


# ---------- Penalty ----------

def months_overdue(due_date, reference_date=None, clock: Clock | None = None) -> int:
    """Whole calendar months elapsed since the end of the due day."""
    clock = clock or Clock()
    due = to_datetime(due_date, clock)
    reference = _reference(reference_date, clock)
    if due is None or reference is None:
        return 0
    due = end_of_day(due)
    if reference <= due:
        return 0

    months = 0
    try:
        # Step from the original due date so Jan 31 -> Feb 28 -> Mar 31 does not drift
        while add_months(due, months + 1) <= reference:
            months += 1
    except (OverflowError, ValueError):
        pass
    return months


def monthly_penalty(due_date, reference_date=None, unit=None, clock: Clock | None = None) -> float:
    """Flat `unit` charged per full month past due. Not pro-rated."""
    return utils.non_negative(months_overdue(due_date, reference_date, clock) * _unit(unit))


# ---------- Amount reconciler ----------

def _resolve_base(tx: Transaction, maintenance_amount) -> float | None:
    base = to_money(tx.base_amount)
    if base is not None:
        return base
    total = to_money(tx.total_amount)
    penalty = to_money(tx.penalty_amount)
    amount = to_money(tx.amount)
    if total is not None and penalty is not None:
        return total - penalty
    if amount is not None and penalty is not None:
        return amount - penalty
    configured = to_money(maintenance_amount)
    if configured is not None:
        return configured
    return amount


def reconcile_amounts(
    tx: Any,
    reference_date=None,
    dynamic_penalty: bool | None = None,
    maintenance_amount=None,
    unit=None,
    clock: Clock | None = None,
) -> AmountBreakdown:
    """
    Canonical base/penalty/total for a billing record of any vintage.

    Unpaid bills default to a live penalty measured against `reference_date`;
    paid bills default to the amounts frozen at payment time.
    """
    clock = clock or Clock()
    tx = Transaction.from_record(tx)
    if dynamic_penalty is None:
        dynamic_penalty = not tx.is_paid

    base = utils.non_negative(_resolve_base(tx, maintenance_amount))

    if dynamic_penalty:
        penalty = monthly_penalty(tx.due_date, reference_date, unit, clock)
        return AmountBreakdown(base, penalty, utils.non_negative(base + penalty))

    stored_penalty = to_money(tx.penalty_amount)
    if stored_penalty is not None:
        penalty = utils.non_negative(stored_penalty)
    else:
        # A paid bill stopped accruing when it was paid
        paid_at = to_datetime(tx.paid_at, clock) if tx.is_paid else None
        penalty = monthly_penalty(tx.due_date, paid_at or reference_date, unit, clock)

    total = to_money(tx.total_amount)
    if total is None and tx.is_paid:
        total = to_money(tx.amount)
    if total is None:
        total = base + penalty
    return AmountBreakdown(base, penalty, utils.non_negative(total))


# ---------- Period projector ----------

def _limit(limit) -> int:
    if isinstance(limit, str) and limit.strip().isdigit():
        limit = int(limit)
    if isinstance(limit, bool) or not isinstance(limit, int):
        return DEFAULT_PERIOD_LIMIT
    return max(1, min(limit, MAX_PERIOD_LIMIT))


def _first_due_date(member: MemberSchedule, reference: datetime, clock: Clock) -> datetime | None:
    stored = to_datetime(member.next_due_date, clock)
    if stored is not None:
        return end_of_day(stored)
    if member.recurring_due_enabled:
        return resolve_next_due_date(member.due_day_of_month, None, reference, clock)
    if to_day(member.due_day_of_month) is not None:
        return upcoming_due_date(member.due_day_of_month, reference, clock)
    return None


def iter_pending_periods(member, limit=None, reference_date=None, unit=None,
                         clock: Clock | None = None) -> Iterator[BillingPeriod]:
    """
    Lazily project upcoming billing periods for a member, oldest first.
    Every call starts over from the member's current schedule.
    """
    if member is None:
        return
    clock = clock or Clock()
    member = MemberSchedule.from_record(member)
    reference = _reference(reference_date, clock)
    if reference is None:
        return

    cursor = _first_due_date(member, reference, clock)
    base = utils.non_negative(to_money(member.maintenance_amount))
    due_day = to_day(member.due_day_of_month)

    for _ in range(_limit(limit)):
        if cursor is None:
            return
        penalty = monthly_penalty(cursor, reference, unit, clock)
        yield BillingPeriod(
            id=utils.period_id(cursor),
            label=utils.period_label(cursor),
            due_date=cursor,
            base_amount=base,
            penalty_amount=penalty,
            total_amount=utils.non_negative(base + penalty),
            is_overdue=cursor < reference,
        )
        try:
            cursor = next_due_date_after(cursor, due_day or cursor.day, clock)
        except (OverflowError, ValueError):
            cursor = None


def pending_periods(member, limit=None, reference_date=None, unit=None,
                    clock: Clock | None = None) -> list[BillingPeriod]:
    return list(iter_pending_periods(member, limit, reference_date, unit, clock))
