"""
Overdue fine policy.

Fines start after a role-dependent grace period: teachers get 2 days,
students and everyone else 1 day. Each further (partial) day late costs
FINE_PER_DAY. All functions take `now` explicitly.
"""

import math
from datetime import datetime, timedelta
from typing import Optional

import config

DAY = timedelta(days=1)


def grace_period_days(role: Optional[str]) -> int:
    return config.GRACE_PERIOD_DAYS.get(role or "", config.DEFAULT_GRACE_PERIOD_DAYS)


def days_late(due_date: datetime, now: datetime) -> int:
    """Whole days past due, rounding partial days up. 0 when not yet due."""
    late = now - due_date
    if late <= timedelta(0):
        return 0
    return math.ceil(late / DAY)


def calculate_fine(due_date: datetime, role: Optional[str], now: datetime) -> int:
    billable = max(0, days_late(due_date, now) - grace_period_days(role))
    return billable * config.FINE_PER_DAY


def fine_policy(role: Optional[str]) -> dict:
    grace = grace_period_days(role)
    return {
        "user_type": role or "student",
        "grace_period": grace,
        "fine_per_day": config.FINE_PER_DAY,
        "currency": config.CURRENCY,
        "description": f"{grace} day{'s' if grace != 1 else ''} grace period, "
        f"then {config.FINE_PER_DAY} {config.CURRENCY} per day",
    }
