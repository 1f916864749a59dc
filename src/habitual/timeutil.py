"""Time helpers for the CLI and promotion checks.

``parse_time_reference`` accepts what an operator would type after
``--before``: ISO dates ("2025-01-15"), "N <unit>s ago", and a few named
references ("today", "yesterday", "last week", "last month", "last year").
"""

import re
from datetime import datetime, timedelta, timezone

from dateutil import parser as dateparser
from dateutil.relativedelta import relativedelta

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 60 * SECONDS_PER_MINUTE
SECONDS_PER_DAY = 24 * SECONDS_PER_HOUR
SECONDS_PER_WEEK = 7 * SECONDS_PER_DAY
SECONDS_PER_MONTH = 30 * SECONDS_PER_DAY
SECONDS_PER_YEAR = 365 * SECONDS_PER_DAY

# Calendar units go through relativedelta so "1 month ago" lands on the same day
_CALENDAR_UNITS = {"month", "year"}

_AGO_PATTERN = re.compile(r"^(\d+)\s*(second|minute|hour|day|week|month|year)s?\s+ago$")

# Largest first; format_relative_time picks the first that fits
_DISPLAY_UNITS = [
    ("year", SECONDS_PER_YEAR),
    ("month", SECONDS_PER_MONTH),
    ("week", SECONDS_PER_WEEK),
    ("day", SECONDS_PER_DAY),
    ("hour", SECONDS_PER_HOUR),
    ("minute", SECONDS_PER_MINUTE),
]


def _start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def _units_ago(now: datetime, amount: int, unit: str) -> datetime:
    if unit in _CALENDAR_UNITS:
        return now - relativedelta(**{f"{unit}s": amount})
    return now - timedelta(**{f"{unit}s": amount})


def parse_time_reference(ref: str, now: datetime | None = None) -> datetime:
    """Turn a human time reference into an aware UTC datetime.

    Args:
        ref: e.g. "30 days ago", "yesterday", "2025-01-15"
        now: Reference point for relative forms (default: current UTC time)

    Raises:
        ValueError: If ``ref`` is not understood
    """
    now = now or datetime.now(timezone.utc)
    text = ref.strip().lower()

    named = {
        "today": lambda: _start_of_day(now),
        "yesterday": lambda: _start_of_day(now - timedelta(days=1)),
        "last week": lambda: _units_ago(now, 1, "week"),
        "last month": lambda: _units_ago(now, 1, "month"),
        "last year": lambda: _units_ago(now, 1, "year"),
    }
    if text in named:
        return named[text]()

    if match := _AGO_PATTERN.match(text):
        return _units_ago(now, int(match.group(1)), match.group(2))

    try:
        parsed = dateparser.parse(text)
    except (ValueError, OverflowError) as e:
        raise ValueError(f"Cannot parse time reference: {ref}") from e
    if parsed is None:
        raise ValueError(f"Cannot parse time reference: {ref}")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def days_between(start: datetime, end: datetime) -> float:
    """Fractional days from ``start`` to ``end`` (negative if end is earlier)."""
    return (end - start).total_seconds() / SECONDS_PER_DAY


def format_relative_time(dt: datetime, now: datetime | None = None) -> str:
    """Short "N units ago" label for tables, e.g. "3 days ago"."""
    now = now or datetime.now(timezone.utc)
    elapsed = int((now - dt).total_seconds())
    if elapsed < 0:
        return "in the future"

    for unit, size in _DISPLAY_UNITS:
        if elapsed >= size:
            n = elapsed // size
            return f"{n} {unit}{'' if n == 1 else 's'} ago"
    return f"{elapsed} seconds ago"
