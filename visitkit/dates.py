# UTC-safe helpers for date-only values (YYYY-MM-DD)

import math
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

import pandas as pd


def today_utc() -> date:
    """Current calendar date in UTC."""
    return datetime.now(timezone.utc).date()


def parse_date_utc(value: Any) -> Optional[date]:
    """
    Normalize a date-like value to a UTC calendar date.

    Accepts ``date``, ``datetime`` (aware values are converted to UTC first),
    pandas ``Timestamp`` and ISO strings. Empty values, NaN/NaT and strings
    that cannot be parsed return None.
    """
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if value is pd.NaT:
        return None
    if isinstance(value, pd.Timestamp):
        value = value.to_pydatetime()
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            if "T" in text or " " in text:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
                if parsed.tzinfo is not None:
                    parsed = parsed.astimezone(timezone.utc)
                return parsed.date()
            return date.fromisoformat(text[:10])
        except ValueError:
            return None
    return None


def days_diff_utc(start: Any, end: Any) -> int:
    """Whole days from ``start`` to ``end``; 0 when either side is missing."""
    a = parse_date_utc(start)
    b = parse_date_utc(end)
    if a is None or b is None:
        return 0
    return (b - a).days


def add_days(value: date, days: int) -> date:
    return value + timedelta(days=int(days))


def iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None
