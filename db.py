"""
db.py
SQLite helpers + initialization (creates DB/tables, inserts default admin, etc.)
and the member / transaction stores used by the payment workflow.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone

import config

logger = logging.getLogger(__name__)

DB_FILE = config.DB_FILE

MEMBER_COLUMNS = (
    "society_name", "flat_number", "wing", "floor", "member_name", "phone", "email",
    "maintenance_type", "maintenance_amount", "due_day_of_month", "next_due_date",
    "recurring_due_enabled",
)

TRANSACTION_COLUMNS = (
    "order_id", "payment_id", "receipt", "member_id", "society_name", "flat_number",
    "wing", "floor", "member_name", "member_phone", "member_email", "amount",
    "base_amount", "penalty_amount", "total_amount", "currency", "maintenance_type",
    "payment_period", "due_date", "status", "payment_method", "created_at", "paid_at",
    "notes",
)


@contextmanager
def get_conn():
    conn = sqlite3.connect(DB_FILE, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def execute(sql: str, params: tuple = ()) -> int:
    with get_conn() as conn:
        cur = conn.execute(sql, params)
        return cur.lastrowid


def execute_count(sql: str, params: tuple = ()) -> int:
    """Like execute() but returns the number of rows changed."""
    with get_conn() as conn:
        cur = conn.execute(sql, params)
        return cur.rowcount


def fetch_one(sql: str, params: tuple = ()):
    with get_conn() as conn:
        cur = conn.execute(sql, params)
        return cur.fetchone()


def fetch_all(sql: str, params: tuple = ()) -> list[sqlite3.Row]:
    with get_conn() as conn:
        cur = conn.execute(sql, params)
        return cur.fetchall()


def to_db_value(value):
    # Dates are stored as ISO-8601 text
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


def _create_tables() -> None:
    execute(
        """
        CREATE TABLE IF NOT EXISTS admin_users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT NOT NULL UNIQUE,
            password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )

    execute(
        """
        CREATE TABLE IF NOT EXISTS members (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            society_name TEXT NOT NULL,
            flat_number TEXT NOT NULL UNIQUE,
            wing TEXT,
            floor TEXT,
            member_name TEXT NOT NULL,
            phone TEXT,
            email TEXT,
            password_hash TEXT,
            maintenance_type TEXT NOT NULL DEFAULT 'monthly'
                CHECK(maintenance_type IN ('monthly','quarterly','annual')),
            maintenance_amount REAL NOT NULL DEFAULT 0,
            due_day_of_month INTEGER CHECK(due_day_of_month IS NULL OR due_day_of_month BETWEEN 1 AND 31),
            next_due_date TEXT,
            recurring_due_enabled INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    # Money columns are nullable: rows from before the base/penalty/total split only have `amount`
    execute(
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id TEXT NOT NULL UNIQUE,
            payment_id TEXT,
            receipt TEXT,
            member_id INTEGER,
            society_name TEXT NOT NULL,
            flat_number TEXT NOT NULL,
            wing TEXT,
            floor TEXT,
            member_name TEXT NOT NULL,
            member_phone TEXT,
            member_email TEXT,
            amount REAL,
            base_amount REAL,
            penalty_amount REAL,
            total_amount REAL,
            currency TEXT,
            maintenance_type TEXT NOT NULL DEFAULT 'monthly'
                CHECK(maintenance_type IN ('monthly','quarterly','annual')),
            payment_period TEXT NOT NULL,
            due_date TEXT,
            status TEXT NOT NULL DEFAULT 'created'
                CHECK(status IN ('created','paid','failed','refunded')),
            payment_method TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            paid_at TEXT,
            notes TEXT,
            FOREIGN KEY(member_id) REFERENCES members(id) ON DELETE SET NULL
        )
        """
    )

    execute(
        """
        CREATE TABLE IF NOT EXISTS app_settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """
    )


def get_setting(key: str, default: str | None = None) -> str | None:
    row = fetch_one("SELECT value FROM app_settings WHERE key = ?", (key,))
    if row:
        return str(row["value"])
    return default


def set_setting(key: str, value: str) -> None:
    execute(
        """
        INSERT INTO app_settings(key, value) VALUES(?, ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
        """,
        (key, value),
    )


def init_db(default_admin_hash: str) -> None:
    """
    Initialize the database.
    - Create tables
    - Insert default admin (admin/admin123) if no admin exists
    - Force password change on first login
    """
    _create_tables()

    admin = fetch_one("SELECT id FROM admin_users LIMIT 1")
    if not admin:
        now = datetime.now(timezone.utc).isoformat(timespec="seconds")
        execute(
            "INSERT INTO admin_users(username, password_hash, created_at) VALUES(?,?,?)",
            ("admin", default_admin_hash, now),
        )
        set_setting("force_password_change", "1")
        logger.info("Created default admin user in %s", DB_FILE)
    else:
        # ensure setting exists
        if get_setting("force_password_change") is None:
            set_setting("force_password_change", "0")


def is_force_password_change() -> bool:
    return get_setting("force_password_change") == "1"


def clear_force_password_change() -> None:
    set_setting("force_password_change", "0")


def get_penalty_unit() -> float:
    raw = get_setting("penalty_per_month")
    try:
        return float(raw) if raw is not None else config.PENALTY_PER_MONTH
    except ValueError:
        logger.warning("Bad penalty_per_month setting %r, using %s", raw, config.PENALTY_PER_MONTH)
        return config.PENALTY_PER_MONTH


def set_penalty_unit(value: float) -> None:
    set_setting("penalty_per_month", str(float(value)))


# ---------- Members ----------

def get_member(member_id: int):
    return fetch_one("SELECT * FROM members WHERE id = ?", (member_id,))


def get_member_by_flat(flat_number: str):
    return fetch_one("SELECT * FROM members WHERE flat_number = ?", (flat_number.strip(),))


def list_members(search: str = "", recurring_only: bool = False) -> list[sqlite3.Row]:
    sql = "SELECT * FROM members WHERE 1=1"
    params = []

    if search.strip():
        sql += " AND (member_name LIKE ? OR flat_number LIKE ? OR phone LIKE ? OR society_name LIKE ?)"
        like = f"%{search.strip()}%"
        params.extend([like, like, like, like])

    if recurring_only:
        sql += " AND recurring_due_enabled = 1"

    sql += " ORDER BY society_name ASC, flat_number ASC"
    return fetch_all(sql, tuple(params))


def save_member(data: dict, member_id: int | None = None) -> int:
    """Insert (member_id None) or update a member; unknown keys are ignored."""
    cols = [c for c in MEMBER_COLUMNS if c in data]
    values = tuple(to_db_value(data[c]) for c in cols)
    if member_id is None:
        placeholders = ",".join("?" for _ in cols)
        return execute(f"INSERT INTO members({','.join(cols)}) VALUES({placeholders})", values)
    assignments = ", ".join(f"{c}=?" for c in cols)
    execute(f"UPDATE members SET {assignments} WHERE id=?", values + (member_id,))
    return member_id


def delete_member(member_id: int) -> None:
    execute("DELETE FROM members WHERE id = ?", (member_id,))


def set_member_password_hash(member_id: int, password_hash: str) -> None:
    execute("UPDATE members SET password_hash = ? WHERE id = ?", (password_hash, member_id))


def set_recurring(member_id: int, enabled: bool, next_due_date=None) -> None:
    """Enable with an initial due date, or disable (which clears next_due_date)."""
    if enabled:
        execute(
            "UPDATE members SET recurring_due_enabled = 1, next_due_date = ? WHERE id = ?",
            (to_db_value(next_due_date), member_id),
        )
    else:
        execute(
            "UPDATE members SET recurring_due_enabled = 0, next_due_date = NULL WHERE id = ?",
            (member_id,),
        )


def advance_member_due_date(member_id: int, expected_current, new_due_date) -> bool:
    """
    Compare-and-set on next_due_date. Returns False when another writer moved
    the schedule since `expected_current` was read.
    """
    changed = execute_count(
        "UPDATE members SET next_due_date = ? WHERE id = ? AND next_due_date IS ?",
        (to_db_value(new_due_date), member_id, to_db_value(expected_current)),
    )
    return changed == 1


# ---------- Transactions ----------

def insert_transaction(data: dict) -> int:
    cols = [c for c in TRANSACTION_COLUMNS if c in data and data[c] is not None]
    values = tuple(to_db_value(data[c]) for c in cols)
    placeholders = ",".join("?" for _ in cols)
    return execute(f"INSERT INTO transactions({','.join(cols)}) VALUES({placeholders})", values)


def get_transaction(order_id: str):
    return fetch_one("SELECT * FROM transactions WHERE order_id = ?", (order_id,))


def _transaction_filter(society_name=None, flat_number=None, member_phone=None, status=None,
                        maintenance_type=None, member_id=None, due_before=None) -> tuple[str, list]:
    where = " WHERE 1=1"
    params: list = []
    if society_name:
        # case-insensitive partial match
        where += " AND society_name LIKE ?"
        params.append(f"%{society_name.strip()}%")
    if flat_number:
        where += " AND flat_number = ?"
        params.append(flat_number)
    if member_phone:
        where += " AND member_phone = ?"
        params.append(member_phone)
    if status:
        where += " AND status = ?"
        params.append(status)
    if maintenance_type:
        where += " AND maintenance_type = ?"
        params.append(maintenance_type)
    if member_id is not None:
        where += " AND member_id = ?"
        params.append(member_id)
    if due_before is not None:
        where += " AND due_date < ?"
        params.append(to_db_value(due_before))
    return where, params


def list_transactions(limit: int | None = None, offset: int = 0,
                      order_by: str = "created_at DESC, id DESC", **filters) -> list[sqlite3.Row]:
    where, params = _transaction_filter(**filters)
    sql = "SELECT * FROM transactions" + where + f" ORDER BY {order_by}"
    if limit is not None:
        sql += " LIMIT ? OFFSET ?"
        params.extend([int(limit), int(offset)])
    return fetch_all(sql, tuple(params))


def count_transactions(**filters) -> int:
    where, params = _transaction_filter(**filters)
    return int(fetch_one("SELECT COUNT(*) AS c FROM transactions" + where, tuple(params))["c"])
