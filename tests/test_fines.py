from datetime import datetime, timezone

import pytest

from circulation.fines import accrue_fine, compute_fine, days_late


def test_three_days_late_is_one_fifty():
    assert compute_fine("2024-01-01", "2024-01-04") == 1.50


def test_on_time_and_early_returns_are_free():
    assert compute_fine("2024-01-10", "2024-01-10") == 0.0
    assert compute_fine("2024-01-10", "2024-01-02") == 0.0


def test_partial_day_rounds_up():
    due = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    returned = datetime(2024, 1, 1, 13, 30, tzinfo=timezone.utc)
    assert days_late(due, returned) == 1
    assert compute_fine(due, returned) == 0.50


def test_twenty_days_late_is_ten_dollars():
    assert compute_fine("2024-03-15T09:00:00Z", "2024-04-04T09:00:00Z") == 10.00


def test_custom_rate_is_rounded_to_cents():
    assert compute_fine("2024-01-01", "2024-01-04", rate_per_day=0.333) == 1.00


def test_negative_rate_rejected():
    with pytest.raises(ValueError):
        compute_fine("2024-01-01", "2024-01-04", rate_per_day=-1)


def test_accrue_never_lowers_an_existing_fine():
    assert accrue_fine(5.0, "2024-01-01", "2024-01-02") == 5.0
    assert accrue_fine(0.0, "2024-01-01", "2024-01-05") == 2.0
