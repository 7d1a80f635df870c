from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterator, List

SUPPORTED_FREQUENCIES = {"daily", "weekly", "monthly", "yearly"}
DAY_INTERVALS = {"daily": 1, "weekly": 7}
MONTH_INTERVALS = {"monthly": 1, "yearly": 12}
# Caps how many occurrences a single processing run may materialize.
MAX_OCCURRENCES_PER_RUN = 366


@dataclass(frozen=True)
class DueSchedule:
    occurrences: List[datetime]
    next_due_date: datetime


def normalize_frequency(value: str) -> str:
    normalized = "".join(ch for ch in value.strip().lower() if ch.isalnum())
    if normalized not in SUPPORTED_FREQUENCIES:
        raise ValueError("Only daily, weekly, monthly, or yearly schedules are supported.")
    return normalized


def iter_occurrences(start: datetime, frequency: str) -> Iterator[datetime]:
    """Yield `start` and every later occurrence.

    Monthly and yearly steps are anchored on the start day, so a schedule on the
    31st lands on the last day of shorter months and returns to the 31st after.
    """
    normalized = normalize_frequency(frequency)
    if normalized in DAY_INTERVALS:
        step = timedelta(days=DAY_INTERVALS[normalized])
        current = start
        while True:
            yield current
            current += step
    else:
        increment = MONTH_INTERVALS[normalized]
        offset = 0
        while True:
            yield _add_months(start, offset, start.day)
            offset += increment


def due_occurrences(next_due_date: datetime, frequency: str, as_of: date) -> DueSchedule:
    """Split a schedule into occurrences due on or before `as_of` and the next due date."""
    occurrences: List[datetime] = []
    schedule = iter_occurrences(next_due_date, frequency)
    current = next(schedule)
    while current.date() <= as_of and len(occurrences) < MAX_OCCURRENCES_PER_RUN:
        occurrences.append(current)
        current = next(schedule)
    return DueSchedule(occurrences=occurrences, next_due_date=current)


def first_of_next_month(today: date) -> datetime:
    return datetime(today.year + today.month // 12, today.month % 12 + 1, 1)


def _add_months(start: datetime, months: int, anchor_day: int) -> datetime:
    total_month = start.month - 1 + months
    year = start.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return start.replace(year=year, month=month, day=day)
