from datetime import date

from finance_tracker.schemas import Frequency
from finance_tracker.services.recurrence import next_occurrence, occurrence, occurrences_between, period_window


def test_monthly_month_end_clamps_without_drifting() -> None:
    anchor = date(2025, 1, 31)
    assert next_occurrence(Frequency.monthly, 1, anchor, date(2025, 1, 31)) == date(2025, 2, 28)
    assert next_occurrence(Frequency.monthly, 1, anchor, date(2025, 2, 28)) == date(2025, 3, 31)
    assert next_occurrence(Frequency.monthly, 1, anchor, date(2025, 3, 31)) == date(2025, 4, 30)


def test_monthly_leap_year_february() -> None:
    anchor = date(2024, 1, 31)
    assert next_occurrence(Frequency.monthly, 1, anchor, anchor) == date(2024, 2, 29)
    assert next_occurrence(Frequency.monthly, 1, anchor, date(2024, 2, 29)) == date(2024, 3, 31)


def test_yearly_feb_29_clamps_in_common_years() -> None:
    anchor = date(2024, 2, 29)
    assert next_occurrence(Frequency.yearly, 1, anchor, anchor) == date(2025, 2, 28)
    assert occurrence(Frequency.yearly, 1, anchor, 4) == date(2028, 2, 29)


def test_weekly_interval_keeps_weekday() -> None:
    anchor = date(2025, 3, 3)  # Monday
    result = next_occurrence(Frequency.weekly, 2, anchor, date(2025, 3, 10))
    assert result == date(2025, 3, 17)
    assert result.weekday() == anchor.weekday()


def test_daily_interval_is_strictly_after_from_date() -> None:
    anchor = date(2025, 3, 1)
    assert next_occurrence(Frequency.daily, 3, anchor, date(2025, 3, 4)) == date(2025, 3, 7)
    assert next_occurrence(Frequency.daily, 3, anchor, date(2025, 3, 5)) == date(2025, 3, 7)


def test_from_date_before_anchor_returns_anchor() -> None:
    anchor = date(2025, 6, 15)
    assert next_occurrence(Frequency.monthly, 1, anchor, date(2025, 1, 1)) == anchor


def test_occurrences_between_respects_end_date() -> None:
    dates = list(
        occurrences_between(Frequency.daily, 1, date(2025, 3, 1), date(2025, 3, 1), date(2025, 3, 10), date(2025, 3, 4))
    )
    assert dates == [date(2025, 3, 2), date(2025, 3, 3), date(2025, 3, 4)]


def test_occurrences_between_starts_at_anchor_when_nothing_processed() -> None:
    dates = list(occurrences_between(Frequency.monthly, 1, date(2025, 1, 31), None, date(2025, 4, 30)))
    assert dates == [date(2025, 1, 31), date(2025, 2, 28), date(2025, 3, 31), date(2025, 4, 30)]


def test_period_window_contains_today() -> None:
    assert period_window(Frequency.monthly, date(2025, 1, 1), date(2025, 3, 15)) == (date(2025, 3, 1), date(2025, 3, 31))
    assert period_window(Frequency.weekly, date(2025, 3, 3), date(2025, 3, 12)) == (date(2025, 3, 10), date(2025, 3, 16))
    assert period_window(Frequency.yearly, date(2024, 7, 1), date(2025, 2, 1)) == (date(2024, 7, 1), date(2025, 6, 30))
