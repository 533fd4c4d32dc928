from datetime import date

import pytest

from visitkit.schemas import VisitScheduleInfo
from visitkit.visit_calculator import (
    calculate_study_visit_schedule,
    calculate_visit_date,
    format_visit_window,
    get_days_from_scheduled,
    get_visit_status,
    is_within_visit_window,
    timing_to_days,
)


def test_day_one_anchor_scenario():
    """Day 29 in a Day 1 study lands 28 days after baseline with a +/-7 window."""
    result = calculate_visit_date(date(2024, 1, 1), 29, "days", anchor_day=1, window_before=7, window_after=7)

    assert result.scheduled_date == date(2024, 1, 29)
    assert result.window_start == date(2024, 1, 22)
    assert result.window_end == date(2024, 2, 5)
    assert result.days_from_baseline == 28


def test_day_one_maps_to_baseline():
    """In a Day 1 study, Day 1 is the baseline date itself."""
    result = calculate_visit_date(date(2024, 1, 1), 1, "days", anchor_day=1, window_before=0, window_after=0)
    assert result.scheduled_date == date(2024, 1, 1)
    assert result.window_start == result.window_end == date(2024, 1, 1)


def test_day_zero_anchor_weeks():
    """Week 4 in a Day 0 study is 28 days after baseline."""
    result = calculate_visit_date(date(2024, 1, 1), 4, "weeks", anchor_day=0)
    assert result.scheduled_date == date(2024, 1, 29)
    assert result.days_from_baseline == 28


def test_months_are_thirty_days():
    """Months use a fixed 30 day approximation, not calendar months."""
    result = calculate_visit_date(date(2024, 1, 1), 3, "months", anchor_day=0)
    assert result.scheduled_date == date(2024, 3, 31)
    assert timing_to_days(1, "months") == 30


def test_negative_timing_before_baseline():
    """Screening visits can sit before baseline."""
    result = calculate_visit_date(date(2024, 1, 1), -14, "days", anchor_day=0, window_before=0, window_after=0)
    assert result.scheduled_date == date(2023, 12, 18)


def test_invalid_timing_inputs_raise():
    """Unknown units, anchor days and negative windows are rejected."""
    with pytest.raises(ValueError):
        calculate_visit_date(date(2024, 1, 1), 2, "fortnights")
    with pytest.raises(ValueError):
        calculate_visit_date(date(2024, 1, 1), 2, "days", anchor_day=2)
    with pytest.raises(ValueError):
        calculate_visit_date(date(2024, 1, 1), 2, "days", window_before=-1)


def test_within_window_is_reflexive_and_inclusive():
    """A visit on its scheduled date, or on either window edge, is in window."""
    scheduled = date(2024, 2, 10)
    for before, after in [(0, 0), (3, 5), (14, 0)]:
        assert is_within_visit_window(scheduled, scheduled, before, after)

    assert is_within_visit_window(date(2024, 2, 7), scheduled, 3, 5)
    assert is_within_visit_window(date(2024, 2, 15), scheduled, 3, 5)
    assert not is_within_visit_window(date(2024, 2, 6), scheduled, 3, 5)
    assert not is_within_visit_window(date(2024, 2, 16), scheduled, 3, 5)


def test_days_from_scheduled_sign():
    """Early visits are negative, late visits positive."""
    scheduled = date(2024, 2, 10)
    assert get_days_from_scheduled(scheduled, scheduled) == 0
    assert get_days_from_scheduled(date(2024, 2, 8), scheduled) == -2
    assert get_days_from_scheduled(date(2024, 2, 13), scheduled) == 3


def test_visit_status_without_actual_date():
    """Pending visits move from scheduled to due to overdue as today advances."""
    scheduled = date(2024, 2, 10)
    assert get_visit_status(scheduled, None, 3, 3, today=date(2024, 2, 6)) == "scheduled"
    assert get_visit_status(scheduled, None, 3, 3, today=date(2024, 2, 7)) == "due"
    assert get_visit_status(scheduled, None, 3, 3, today=date(2024, 2, 13)) == "due"
    assert get_visit_status(scheduled, None, 3, 3, today=date(2024, 2, 14)) == "overdue"


def test_visit_status_with_actual_date():
    """Performed visits are completed, early or late relative to the window."""
    scheduled = date(2024, 2, 10)
    assert get_visit_status(scheduled, date(2024, 2, 12), 3, 3) == "completed"
    assert get_visit_status(scheduled, date(2024, 2, 1), 3, 3) == "early"
    assert get_visit_status(scheduled, date(2024, 2, 20), 3, 3) == "late"


def test_format_visit_window():
    assert format_visit_window(0, 0) == "N/A"
    assert format_visit_window(3, 7) == "-3/+7 days"


def test_study_visit_schedule():
    """Every template is calculated against the same baseline."""
    templates = [
        VisitScheduleInfo(visit_name="Baseline", timing_value=1, timing_unit="days", window_before=0, window_after=0),
        VisitScheduleInfo(visit_name="Week 4", timing_value=29, timing_unit="days"),
        VisitScheduleInfo(visit_name="Month 2", timing_value=2, timing_unit="months", window_before=14, window_after=14),
    ]

    schedule = calculate_study_visit_schedule(date(2024, 1, 1), templates, anchor_day=1)

    assert [visit.visit_name for visit in schedule] == ["Baseline", "Week 4", "Month 2"]
    assert schedule[0].scheduled_date == date(2024, 1, 1)
    assert schedule[1].scheduled_date == date(2024, 1, 29)
    assert schedule[2].scheduled_date == date(2024, 2, 29)
    assert schedule[2].window_start == date(2024, 2, 15)


if __name__ == "__main__":
    pytest.main([__file__])
