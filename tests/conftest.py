from datetime import datetime

import pytest

import db
from utils import FixedClock

# Any string works: the default admin is never logged in with in these tests
ADMIN_HASH = "$2b$12$placeholderplaceholderplaceholderplaceholderpl"


@pytest.fixture
def database(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "DB_FILE", tmp_path / "society.db")
    db.init_db(ADMIN_HASH)
    return tmp_path / "society.db"


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 3, 10, 12, 0), timezone="UTC")


@pytest.fixture
def member_id(database):
    return db.save_member(dict(
        society_name="Green Park",
        flat_number="A-101",
        wing="A",
        floor="1",
        member_name="Ravi Kumar",
        phone="9876543210",
        email="ravi@example.com",
        maintenance_type="monthly",
        maintenance_amount=1500.0,
        due_day_of_month=5,
        recurring_due_enabled=True,
        next_due_date=datetime(2025, 1, 5, 23, 59, 59, 999000),
    ))
