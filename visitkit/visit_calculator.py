"""
Visit date calculator.

Turns a protocol's relative visit timing into calendar dates and windows,
honouring the study's anchor-day convention:

- Day 0 study: baseline is Day 0, a Week 4 visit is 28 days after baseline.
- Day 1 study: baseline is Day 1, a Day 29 visit is 28 days after baseline.
"""

from datetime import date
from typing import Iterable, List, Optional

from visitkit.dates import add_days, today_utc
from visitkit.schemas import (
    CalculatedVisitDate,
    ScheduledTemplateVisit,
    VisitScheduleInfo,
    VisitStatus,
)

# Months are a fixed 30-day approximation, not calendar-month aware.
DAYS_PER_UNIT = {
    "days": 1,
    "weeks": 7,
    "months": 30,
}


def timing_to_days(timing_value: int, timing_unit: str) -> int:
    """Convert a timing value to a day offset (before anchor adjustment)."""
    unit = (timing_unit or "days").strip().lower()
    if unit not in DAYS_PER_UNIT:
        raise ValueError(f"Unsupported timing unit: {timing_unit!r}")
    return int(timing_value) * DAYS_PER_UNIT[unit]


def anchor_offset(anchor_day: int) -> int:
    if anchor_day not in (0, 1):
        raise ValueError(f"anchor_day must be 0 or 1, got {anchor_day!r}")
    # Day 1 maps to the baseline date itself
    return -1 if anchor_day == 1 else 0


def calculate_visit_date(
    baseline_date: date,
    timing_value: int,
    timing_unit: str = "days",
    anchor_day: int = 0,
    window_before: int = 7,
    window_after: int = 7,
) -> CalculatedVisitDate:
    """
    Calculate a visit's scheduled date and inclusive window from baseline.

    Args:
        baseline_date: Subject baseline (randomization or section anchor) date
        timing_value: Signed protocol timing value (e.g. 4, -14, 29)
        timing_unit: 'days', 'weeks' or 'months'
        anchor_day: Study anchor day convention (0 or 1)
        window_before: Days allowed before the scheduled date
        window_after: Days allowed after the scheduled date

    Returns:
        CalculatedVisitDate with scheduled date, window bounds and the
        total day offset from baseline
    """
    if window_before < 0 or window_after < 0:
        raise ValueError("Visit window bounds must be non-negative")

    days_from_baseline = timing_to_days(timing_value, timing_unit) + anchor_offset(anchor_day)
    scheduled = add_days(baseline_date, days_from_baseline)

    return CalculatedVisitDate(
        scheduled_date=scheduled,
        window_start=add_days(scheduled, -window_before),
        window_end=add_days(scheduled, window_after),
        days_from_baseline=days_from_baseline,
    )


def calculate_study_visit_schedule(
    baseline_date: date,
    visit_schedules: Iterable[VisitScheduleInfo],
    anchor_day: int = 0,
) -> List[ScheduledTemplateVisit]:
    """Calculate every template of a schedule of events against one baseline."""
    schedule = []
    for visit in visit_schedules:
        calculated = calculate_visit_date(
            baseline_date,
            visit.timing_value,
            visit.timing_unit,
            anchor_day,
            visit.window_before,
            visit.window_after,
        )
        schedule.append(ScheduledTemplateVisit(**visit.model_dump(), **calculated.model_dump()))
    return schedule


def is_within_visit_window(
    actual_date: date,
    scheduled_date: date,
    window_before: int,
    window_after: int,
) -> bool:
    """Inclusive check that an actual visit date falls inside the window."""
    window_start = add_days(scheduled_date, -window_before)
    window_end = add_days(scheduled_date, window_after)
    return window_start <= actual_date <= window_end


def get_days_from_scheduled(actual_date: date, scheduled_date: date) -> int:
    """Signed day difference from the scheduled date (negative = early)."""
    return (actual_date - scheduled_date).days


def format_visit_window(window_before: int, window_after: int) -> str:
    if window_before == 0 and window_after == 0:
        return "N/A"
    return f"-{window_before}/+{window_after} days"


def get_visit_status(
    scheduled_date: date,
    actual_date: Optional[date] = None,
    window_before: int = 7,
    window_after: int = 7,
    today: Optional[date] = None,
) -> VisitStatus:
    """
    Derive a visit's status from its timing.

    This is a projection recomputed on every read, never a stored history.
    """
    window_start = add_days(scheduled_date, -window_before)
    window_end = add_days(scheduled_date, window_after)

    if actual_date is not None:
        if window_start <= actual_date <= window_end:
            return "completed"
        if actual_date < window_start:
            return "early"
        return "late"

    current = today or today_utc()
    if current < window_start:
        return "scheduled"
    if current <= window_end:
        return "due"
    return "overdue"
