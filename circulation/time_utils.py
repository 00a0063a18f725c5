"""
Time helpers shared by the ledger, the fine policy and the API layer.
All timestamps are timezone-aware UTC; naive inputs are treated as UTC.
"""

from datetime import date, datetime, timezone
from typing import Callable, Optional, Union

Clock = Callable[[], datetime]
DateLike = Union[datetime, date, str]


def utcnow() -> datetime:
    """Current time in UTC, truncated to whole seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def parse_datetime(value: DateLike) -> datetime:
    """Coerce a datetime, date or ISO-8601 string into an aware UTC datetime.

    Plain ``YYYY-MM-DD`` strings and ``date`` objects map to midnight UTC.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError as exc:
            raise ValueError(f"Invalid date value: {value!r}") from exc
    else:
        raise TypeError(f"Unsupported date value: {value!r}")

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def is_date_only(value: DateLike) -> bool:
    """True for ``date`` objects and plain ``YYYY-MM-DD`` strings."""
    if isinstance(value, datetime):
        return False
    if isinstance(value, date):
        return True
    return isinstance(value, str) and len(value.strip()) == 10


def end_of_day(value: datetime) -> datetime:
    return value.replace(hour=23, minute=59, second=59, microsecond=0)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Storage/wire format: ISO-8601 UTC with second precision."""
    if value is None:
        return None
    return parse_datetime(value).isoformat(timespec="seconds")


def format_date(value: Optional[datetime]) -> Optional[str]:
    """Display format: YYYY-MM-DD."""
    if value is None:
        return None
    return parse_datetime(value).strftime("%Y-%m-%d")
