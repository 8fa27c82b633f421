import itertools
import math
from datetime import datetime, timedelta

import pytest

import billing
import config
from models import MemberSchedule, Transaction
from utils import FixedClock, end_of_day


def eod(y, m, d):
    return datetime(y, m, d, 23, 59, 59, 999000)


# ---------- upcoming_due_date ----------

@pytest.mark.parametrize("day, reference, expected", [
    (31, datetime(2025, 2, 10), eod(2025, 2, 28)),
    (31, datetime(2024, 2, 10), eod(2024, 2, 29)),
    (10, datetime(2025, 2, 10, 22, 30), eod(2025, 2, 10)),
    (5, datetime(2025, 2, 10), eod(2025, 3, 5)),
    (30, datetime(2025, 1, 31), eod(2025, 2, 28)),
    (5, datetime(2025, 12, 20), eod(2026, 1, 5)),
    ("15", "2025-04-01", eod(2025, 4, 15)),
])
def test_upcoming_due_date(day, reference, expected):
    assert billing.upcoming_due_date(day, reference) == expected


@pytest.mark.parametrize("day", [None, 0, 32, -1, 15.5, True, "abc", "", [5]])
def test_upcoming_due_date_invalid_day(day):
    assert billing.upcoming_due_date(day, datetime(2025, 2, 10)) is None


@pytest.mark.parametrize("reference", [None, "not-a-date", "", 12345, object()])
def test_upcoming_due_date_invalid_reference(reference):
    assert billing.upcoming_due_date(5, reference) is None


def test_upcoming_due_date_never_before_reference_day():
    start = datetime(2024, 1, 1, 8, 15)
    for offset in range(0, 400, 7):
        reference = start + timedelta(days=offset)
        for day in range(1, 32):
            due = billing.upcoming_due_date(day, reference)
            assert due >= end_of_day(reference)
            assert due - end_of_day(reference) < timedelta(days=32)


# ---------- next_due_date_after ----------

@pytest.mark.parametrize("base, day, expected", [
    (datetime(2025, 1, 31), 31, eod(2025, 2, 28)),
    (datetime(2025, 1, 15), None, eod(2025, 2, 15)),
    (datetime(2025, 12, 10), 5, eod(2026, 1, 5)),
    (eod(2025, 2, 5), 5, eod(2025, 3, 5)),
    (datetime(2025, 3, 1), 31, eod(2025, 4, 30)),
    (datetime(2025, 3, 20), "junk", eod(2025, 4, 20)),
])
def test_next_due_date_after(base, day, expected):
    assert billing.next_due_date_after(base, day) == expected


def test_next_due_date_after_defaults_to_now(clock):
    assert billing.next_due_date_after(None, None, clock) == eod(2025, 4, 10)
    assert billing.next_due_date_after("garbage", 1, clock) == eod(2025, 4, 1)


def test_next_due_date_after_always_next_month():
    base = datetime(2023, 11, 1)
    for offset in range(0, 800, 3):
        current = base + timedelta(days=offset)
        for day in (1, 15, 28, 29, 30, 31):
            nxt = billing.next_due_date_after(current, day)
            months = (nxt.year - current.year) * 12 + nxt.month - current.month
            assert months == 1


def test_next_due_date_after_makes_progress_when_repeated():
    due = eod(2025, 1, 31)
    seen = [due]
    for _ in range(6):
        due = billing.next_due_date_after(due, 31)
        seen.append(due)
    assert seen == sorted(set(seen))
    assert seen[1:4] == [eod(2025, 2, 28), eod(2025, 3, 31), eod(2025, 4, 30)]


def test_next_due_date_after_stays_put_at_end_of_calendar():
    assert billing.next_due_date_after(datetime(9999, 12, 15), 5) == eod(9999, 12, 5)
    assert billing.next_due_date_after(datetime(9999, 12, 15), 31) == eod(9999, 12, 31)


# ---------- resolve_next_due_date ----------

def test_resolve_prefers_explicit_date():
    assert billing.resolve_next_due_date(5, "2025-04-01", datetime(2025, 6, 1)) == eod(2025, 4, 1)


def test_resolve_falls_back_to_day():
    assert billing.resolve_next_due_date(5, "junk", datetime(2025, 2, 10)) == eod(2025, 3, 5)


def test_resolve_uses_clock_when_no_reference(clock):
    assert billing.resolve_next_due_date(15, None, None, clock) == eod(2025, 3, 15)


def test_resolve_nothing_to_go_on():
    assert billing.resolve_next_due_date(None, None, datetime(2025, 2, 10)) is None


# ---------- monthly_penalty ----------

def test_penalty_two_months():
    assert billing.monthly_penalty(eod(2025, 1, 5), datetime(2025, 3, 10), unit=50) == 100


@pytest.mark.parametrize("reference, expected", [
    (datetime(2024, 12, 1), 0),
    (datetime(2025, 1, 5, 8, 0), 0),
    (eod(2025, 1, 5), 0),
    (datetime(2025, 1, 6), 0),
    (datetime(2025, 2, 4), 0),
    (eod(2025, 2, 5), 50),
    (datetime(2025, 2, 6), 50),
    (datetime(2025, 3, 4), 50),
    (datetime(2026, 1, 6), 600),
])
def test_penalty_steps(reference, expected):
    assert billing.monthly_penalty(datetime(2025, 1, 5), reference, unit=50) == expected


def test_penalty_month_end_due_date():
    assert billing.monthly_penalty(eod(2025, 1, 31), eod(2025, 2, 28), unit=50) == 50
    assert billing.monthly_penalty(eod(2025, 1, 31), datetime(2025, 3, 30), unit=50) == 50
    assert billing.monthly_penalty(eod(2025, 1, 31), datetime(2025, 4, 1), unit=50) == 100


def test_penalty_is_non_decreasing():
    due = datetime(2025, 1, 31)
    previous = 0
    for offset in range(0, 500):
        value = billing.monthly_penalty(due, due + timedelta(days=offset), unit=25)
        assert value >= previous
        previous = value


def test_penalty_invalid_inputs():
    assert billing.monthly_penalty(None, datetime(2025, 3, 10), unit=50) == 0
    assert billing.monthly_penalty("junk", datetime(2025, 3, 10), unit=50) == 0
    assert billing.monthly_penalty(datetime(2025, 1, 5), "junk", unit=50) == 0
    assert billing.monthly_penalty(datetime(2025, 1, 5), datetime(2025, 6, 10), unit=-10) == 0
    assert billing.monthly_penalty(datetime(2025, 1, 5), datetime(2025, 6, 10), unit=float("nan")) == 0


def test_penalty_unit_from_config(monkeypatch):
    monkeypatch.setattr(config, "PENALTY_PER_MONTH", 75.0)
    assert billing.monthly_penalty(eod(2025, 1, 5), datetime(2025, 3, 10)) == 150


def test_penalty_uses_clock_when_no_reference(clock):
    assert billing.monthly_penalty(eod(2025, 1, 5), None, unit=50, clock=clock) == 100


# ---------- reconcile_amounts ----------

def test_reconcile_legacy_paid_amount_only():
    tx = Transaction(status="paid", amount=1000)
    result = billing.reconcile_amounts(tx, datetime(2025, 3, 10), dynamic_penalty=False, unit=50)
    assert result.as_dict() == {"base": 1000, "penalty": 0, "total": 1000}


def test_reconcile_unpaid_is_live_by_default():
    tx = Transaction(status="created", base_amount=1500, penalty_amount=999, due_date=eod(2025, 1, 5))
    result = billing.reconcile_amounts(tx, datetime(2025, 3, 10), unit=50)
    assert (result.base, result.penalty, result.total) == (1500, 100, 1600)


def test_reconcile_paid_is_frozen_by_default():
    tx = Transaction(status="paid", base_amount=1500, penalty_amount=50, total_amount=1550,
                     due_date=eod(2025, 1, 5), paid_at=datetime(2025, 2, 10))
    result = billing.reconcile_amounts(tx, datetime(2026, 1, 1), unit=50)
    assert (result.base, result.penalty, result.total) == (1500, 50, 1550)


def test_reconcile_paid_can_be_forced_live():
    tx = Transaction(status="paid", base_amount=1500, penalty_amount=50, total_amount=1550,
                     due_date=eod(2025, 1, 5))
    result = billing.reconcile_amounts(tx, datetime(2025, 4, 10), dynamic_penalty=True, unit=50)
    assert (result.base, result.penalty, result.total) == (1500, 150, 1650)


def test_reconcile_missing_penalty_is_measured_at_payment_time():
    tx = Transaction(status="paid", base_amount=1500, due_date=eod(2025, 1, 5), paid_at="2025-02-10T09:00:00")
    result = billing.reconcile_amounts(tx, datetime(2025, 6, 1), unit=50)
    assert (result.base, result.penalty, result.total) == (1500, 50, 1550)


@pytest.mark.parametrize("fields, maintenance, expected_base", [
    (dict(base_amount=1400, total_amount=9999, penalty_amount=1), None, 1400),
    (dict(total_amount=1600, penalty_amount=100), None, 1500),
    (dict(amount=1100, penalty_amount=100), None, 1000),
    (dict(amount=900), 1200, 1200),
    (dict(amount=900), None, 900),
    (dict(), None, 0),
    (dict(base_amount=-5), None, 0),
    (dict(total_amount=50, penalty_amount=100), None, 0),
    (dict(base_amount="abc", amount="800"), None, 800),
    (dict(base_amount=float("nan"), amount=float("inf")), 300, 300),
])
def test_reconcile_base_resolution(fields, maintenance, expected_base):
    tx = Transaction(status="created", **fields)
    result = billing.reconcile_amounts(tx, datetime(2025, 3, 10), dynamic_penalty=False,
                                       maintenance_amount=maintenance, unit=50)
    assert result.base == expected_base


def test_reconcile_frozen_total_verbatim_and_clamped():
    tx = Transaction(status="created", base_amount=100, penalty_amount=10, total_amount=105)
    assert billing.reconcile_amounts(tx, dynamic_penalty=False).total == 105
    tx = Transaction(status="paid", base_amount=100, penalty_amount=10, total_amount=-20)
    assert billing.reconcile_amounts(tx).total == 0


def test_reconcile_accepts_plain_mappings():
    row = {"status": "created", "amount": 1200, "due_date": "2025-01-05T23:59:59.999000"}
    result = billing.reconcile_amounts(row, datetime(2025, 3, 10), unit=50)
    assert result.as_dict() == {"base": 1200, "penalty": 100, "total": 1300}


MONEY = [None, 0, 120.5, -40, float("nan"), "75", "junk"]


def test_reconcile_is_total_over_partial_records():
    reference = datetime(2025, 3, 10)
    for base, penalty, total, amount in itertools.product(MONEY, repeat=4):
        for status in ("created", "paid"):
            tx = Transaction(status=status, base_amount=base, penalty_amount=penalty,
                             total_amount=total, amount=amount, due_date=eod(2025, 1, 5))
            for dynamic in (None, True, False):
                result = billing.reconcile_amounts(tx, reference, dynamic_penalty=dynamic, unit=50)
                for value in (result.base, result.penalty, result.total):
                    assert math.isfinite(value) and value >= 0
                if dynamic or (dynamic is None and status != "paid"):
                    assert result.total == pytest.approx(result.base + result.penalty)


# ---------- pending_periods ----------

def member(**overrides):
    fields = dict(due_day_of_month=5, next_due_date=eod(2025, 1, 5), recurring_due_enabled=True,
                  maintenance_amount=1500)
    fields.update(overrides)
    return MemberSchedule(**fields)


def test_periods_disabled_without_schedule_is_empty():
    m = member(recurring_due_enabled=False, next_due_date=None, due_day_of_month=None)
    assert billing.pending_periods(m, reference_date=datetime(2025, 3, 10)) == []


def test_periods_empty_for_missing_member_or_bad_reference():
    assert billing.pending_periods(None, reference_date=datetime(2025, 3, 10)) == []
    assert billing.pending_periods(member(), reference_date="junk") == []


def test_periods_from_stored_next_due_date():
    periods = billing.pending_periods(member(), limit=4, reference_date=datetime(2025, 3, 10), unit=50)
    assert [p.id for p in periods] == ["2025-01", "2025-02", "2025-03", "2025-04"]
    assert [p.label for p in periods] == ["January 2025", "February 2025", "March 2025", "April 2025"]
    assert [p.penalty_amount for p in periods] == [100, 50, 0, 0]
    assert [p.total_amount for p in periods] == [1600, 1550, 1500, 1500]
    assert [p.is_overdue for p in periods] == [True, True, True, False]


def test_periods_clamp_then_restore_due_day():
    m = member(next_due_date=None, due_day_of_month=31)
    periods = billing.pending_periods(m, limit=4, reference_date=datetime(2025, 2, 10), unit=50)
    assert [p.due_date for p in periods] == [eod(2025, 2, 28), eod(2025, 3, 31), eod(2025, 4, 30), eod(2025, 5, 31)]


def test_periods_disabled_but_due_day_present():
    m = member(recurring_due_enabled=False, next_due_date=None, due_day_of_month=20)
    periods = billing.pending_periods(m, limit=2, reference_date=datetime(2025, 2, 10))
    assert [p.due_date for p in periods] == [eod(2025, 2, 20), eod(2025, 3, 20)]


@pytest.mark.parametrize("limit, expected", [
    (None, 12), (3, 3), (24, 24), (25, 24), (1000, 24), (0, 1), (-4, 1), ("5", 5), (2.5, 12), (True, 12),
])
def test_periods_limit(limit, expected):
    assert len(billing.pending_periods(member(), limit=limit, reference_date=datetime(2025, 3, 10))) == expected


def test_periods_ordering_and_overdue_flag():
    reference = datetime(2025, 8, 17, 9, 30)
    periods = billing.pending_periods(member(due_day_of_month=31, next_due_date=eod(2025, 1, 31)),
                                      limit=24, reference_date=reference)
    dues = [p.due_date for p in periods]
    assert all(a < b for a, b in zip(dues, dues[1:]))
    assert [p.id for p in periods] == sorted(p.id for p in periods)
    for p in periods:
        assert p.is_overdue == (p.due_date < reference)


def test_periods_are_recomputed_each_call():
    record = {"due_day_of_month": 5, "next_due_date": "2025-01-05T23:59:59.999000",
              "recurring_due_enabled": 1, "maintenance_amount": 1500}
    snapshot = dict(record)
    first = billing.pending_periods(record, limit=6, reference_date=datetime(2025, 3, 10))
    second = billing.pending_periods(record, limit=6, reference_date=datetime(2025, 3, 10))
    assert first == second
    assert first is not second
    assert record == snapshot


def test_iter_pending_periods_is_lazy():
    it = billing.iter_pending_periods(member(), limit=24, reference_date=datetime(2025, 3, 10))
    assert next(it).id == "2025-01"
    assert next(it).id == "2025-02"


def test_periods_use_clock_when_no_reference():
    clock = FixedClock(datetime(2025, 2, 10))
    periods = billing.pending_periods(member(next_due_date=None, due_day_of_month=31), limit=1, clock=clock)
    assert periods[0].due_date == eod(2025, 2, 28)
    assert not periods[0].is_overdue
