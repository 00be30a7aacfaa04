"""
Activity-pattern helpers: time-of-day buckets and day streaks.
Hours are taken in the commit's own UTC offset, so an 08:00 commit made in Tokyo
counts as early even though it is 23:00 UTC.
"""
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Tuple

EARLY_BIRD_BEFORE = 9
NIGHT_OWL_FROM = 21
MIDNIGHT_UNTIL = 4
WORKDAY_START = 9
WORKDAY_END = 17


def is_early_bird(ts: datetime) -> bool:
    return ts.hour < EARLY_BIRD_BEFORE


def is_night_owl(ts: datetime) -> bool:
    return ts.hour >= NIGHT_OWL_FROM


def is_midnight(ts: datetime) -> bool:
    return 0 <= ts.hour < MIDNIGHT_UNTIL


def is_weekend(ts) -> bool:
    return ts.weekday() >= 5


def is_out_of_hours(ts: datetime) -> bool:
    return not (WORKDAY_START <= ts.hour < WORKDAY_END)


def activity_buckets(ts: datetime) -> Tuple[bool, bool, bool, bool, bool]:
    """(early_bird, night_owl, midnight, weekend, out_of_hours); buckets overlap freely."""
    return is_early_bird(ts), is_night_owl(ts), is_midnight(ts), is_weekend(ts), is_out_of_hours(ts)


def _runs(days, consecutive):
    """Yield the length of every maximal run in sorted days under the given adjacency test."""
    run = 0
    prev = None
    for d in days:
        if prev is not None and consecutive(prev, d):
            run += 1
        else:
            if run:
                yield run
            run = 1
        prev = d
    if run:
        yield run


def calculate_streaks(days: Iterable[date], today: Optional[date] = None) -> Tuple[int, int]:
    """Longest run of consecutive calendar days and the run that is still alive.

    The current streak counts only when the last active day is today or yesterday.
    """
    ordered = sorted(set(days))
    if not ordered:
        return 0, 0
    runs = list(_runs(ordered, lambda a, b: (b - a).days == 1))
    longest = max(runs)
    today = today or date.today()
    current = runs[-1] if (today - ordered[-1]).days <= 1 else 0
    return longest, current


def next_workday(d: date) -> date:
    nxt = d + timedelta(days=1)
    while nxt.weekday() >= 5:
        nxt += timedelta(days=1)
    return nxt


def calculate_work_week_streak(days: Iterable[date]) -> int:
    """Longest run of consecutive weekdays with activity; weekends neither count nor break it."""
    weekdays = sorted({d for d in days if d.weekday() < 5})
    if not weekdays:
        return 0
    return max(_runs(weekdays, lambda a, b: b == next_workday(a)))


__all__ = [
    "activity_buckets",
    "is_early_bird",
    "is_night_owl",
    "is_midnight",
    "is_weekend",
    "is_out_of_hours",
    "calculate_streaks",
    "calculate_work_week_streak",
    "next_workday",
]
