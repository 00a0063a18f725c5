"""Late-return fine policy.

Returns and overdue alerts both price late days through :func:`compute_fine`.
"""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal

from circulation.time_utils import DateLike, parse_datetime

DEFAULT_RATE_PER_DAY = 0.50
SECONDS_PER_DAY = 24 * 60 * 60


def days_late(due_date: DateLike, return_date: DateLike) -> int:
    """Whole days past due, rounding any partial day up; 0 when on time."""
    delta = (parse_datetime(return_date) - parse_datetime(due_date)).total_seconds()
    if delta <= 0:
        return 0
    return math.ceil(delta / SECONDS_PER_DAY)


def compute_fine(due_date: DateLike, return_date: DateLike,
                 rate_per_day: float = DEFAULT_RATE_PER_DAY) -> float:
    """Fine owed for returning on ``return_date`` a loan due on ``due_date``.

    >>> compute_fine("2024-01-01", "2024-01-04")
    1.5
    """
    if rate_per_day < 0:
        raise ValueError("rate_per_day cannot be negative")
    days = days_late(due_date, return_date)
    if days == 0:
        return 0.0
    amount = Decimal(days) * Decimal(str(rate_per_day))
    return float(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def accrue_fine(existing: float, due_date: DateLike, return_date: DateLike,
                rate_per_day: float = DEFAULT_RATE_PER_DAY) -> float:
    """Never lower an already recorded fine."""
    return max(existing or 0.0, compute_fine(due_date, return_date, rate_per_day))
