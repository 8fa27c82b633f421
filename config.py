"""
config.py
Environment-driven settings (database location, calendar, penalty unit, gateway keys).
"""

from __future__ import annotations

import os
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


DB_FILE = Path(os.environ.get("SOCIETY_DB_FILE") or Path(__file__).with_name("society.db"))

# All due dates are computed on this calendar
TIMEZONE = os.environ.get("SOCIETY_TIMEZONE", "UTC")

# Late fee charged for each full month a bill stays unpaid
PENALTY_PER_MONTH = _env_float("SOCIETY_PENALTY_PER_MONTH", 50.0)

CURRENCY = os.environ.get("SOCIETY_CURRENCY", "INR")

GATEWAY_KEY_ID = os.environ.get("SOCIETY_GATEWAY_KEY_ID", "demo_key")
GATEWAY_SECRET = os.environ.get("SOCIETY_GATEWAY_SECRET", "demo_secret")

LOG_LEVEL = os.environ.get("SOCIETY_LOG_LEVEL", "INFO").upper()
