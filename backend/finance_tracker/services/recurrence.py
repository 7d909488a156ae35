from calendar import monthrange
from datetime import date, timedelta
from typing import Iterator

from ..schemas import Frequency


def add_months(base: date, months: int) -> date:
    total_month = (base.month - 1) + months
    year = base.year + total_month // 12
    month = (total_month % 12) + 1
    # Jan 31 + 1 month lands on the last day of February, Feb 29 + 1 year on Feb 28.
    day = min(base.day, monthrange(year, month)[1])
    return base.replace(year=year, month=month, day=day)


def occurrence(frequency: Frequency, interval: int, anchor: date, index: int) -> date:
    """Date of the ``index``-th occurrence, counted from ``anchor`` (index 0).

    Always measured from the anchor rather than from the previous occurrence,
    so a clamped month end never drifts the day of month for later months.
    """
    if interval < 1:
        raise ValueError("interval must be >= 1")
    step = index * interval
    if frequency == Frequency.daily:
        return anchor + timedelta(days=step)
    if frequency == Frequency.weekly:
        return anchor + timedelta(weeks=step)
    if frequency == Frequency.monthly:
        return add_months(anchor, step)
    if frequency == Frequency.yearly:
        return add_months(anchor, step * 12)
    raise ValueError(f"unsupported frequency: {frequency}")


def _first_index_guess(frequency: Frequency, interval: int, anchor: date, from_date: date) -> int:
    if frequency == Frequency.daily:
        return (from_date - anchor).days // interval
    if frequency == Frequency.weekly:
        return (from_date - anchor).days // (7 * interval)
    months = (from_date.year - anchor.year) * 12 + (from_date.month - anchor.month)
    if frequency == Frequency.monthly:
        return months // interval
    return months // (12 * interval)


def next_occurrence(frequency: Frequency, interval: int, anchor: date, from_date: date) -> date:
    """First occurrence strictly after ``from_date``; the anchor itself if ``from_date`` precedes it."""
    if from_date < anchor:
        return anchor
    index = max(_first_index_guess(frequency, interval, anchor, from_date), 0)
    candidate = occurrence(frequency, interval, anchor, index)
    while candidate <= from_date:
        index += 1
        candidate = occurrence(frequency, interval, anchor, index)
    return candidate


def occurrences_between(
    frequency: Frequency,
    interval: int,
    anchor: date,
    after: date | None,
    until: date,
    end_date: date | None = None,
) -> Iterator[date]:
    """Occurrences in ``(after, until]``, never past ``end_date``.

    ``after=None`` means nothing has been materialized yet, so the anchor
    itself is the first candidate.
    """
    current = anchor if after is None else next_occurrence(frequency, interval, anchor, after)
    while current <= until and (end_date is None or current <= end_date):
        yield current
        current = next_occurrence(frequency, interval, anchor, current)


def period_window(frequency: Frequency, anchor: date, today: date) -> tuple[date, date]:
    """The one-interval window, anchored at ``anchor``, that contains ``today``."""
    if today < anchor:
        start = anchor
    else:
        index = max(_first_index_guess(frequency, 1, anchor, today), 0)
        while occurrence(frequency, 1, anchor, index) > today:
            index -= 1
        while occurrence(frequency, 1, anchor, index + 1) <= today:
            index += 1
        start = occurrence(frequency, 1, anchor, index)
    return start, next_occurrence(frequency, 1, anchor, start) - timedelta(days=1)
