"""
Resolve the time window in which unlocks count toward a challenge month.

A challenge month runs from the first instant of the month up to (but not
including) the first instant of the next month. Unlocks on the last calendar
day of the previous month (the grace date) also count.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo

from challenge_awards.exceptions import InputError

MONTH_KEY_PATTERN = re.compile(r"([0-9]{4})-([0-9]{2})")


def parse_month_key(month_key: str) -> tuple[int, int]:
    """
    Parse a YYYY-MM month key.

    Args:
        month_key: Month identifier such as "2025-02"

    Returns:
        Tuple of (year, month) with month in 1-12

    Raises:
        InputError: If the key is not a valid YYYY-MM string
    """
    if not isinstance(month_key, str):
        raise InputError(f"Month key must be a string, got {type(month_key).__name__}")

    match = MONTH_KEY_PATTERN.fullmatch(month_key)
    if not match:
        raise InputError(
            f"Invalid month key '{month_key}'. Expected format YYYY-MM.",
            month_key=month_key,
        )

    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise InputError(f"Invalid month in key '{month_key}'", month_key=month_key)

    return year, month


def format_month_key(year: int, month: int) -> str:
    """Build the canonical YYYY-MM key for a year and month (1-12)."""
    return f"{year:04d}-{month:02d}"


def month_key_for(moment: datetime | date) -> str:
    """Month key of the month containing a date or datetime."""
    return format_month_key(moment.year, moment.month)


def _next_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


@dataclass(frozen=True)
class ChallengeWindow:
    """Eligible earn-time window for one challenge month."""

    window_start: datetime
    window_end: datetime  # exclusive
    grace_date: date

    def earned_in_window(self, timestamp: datetime | None) -> bool:
        """
        Check whether an unlock time counts for this challenge.

        Naive timestamps are read in the window's timezone.

        Args:
            timestamp: When the achievement was earned, or None if not earned

        Returns:
            True if the unlock falls in [window_start, window_end) or on the grace date
        """
        if timestamp is None:
            return False

        tz = self.window_start.tzinfo
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=tz)

        if self.window_start <= timestamp < self.window_end:
            return True

        return timestamp.astimezone(tz).date() == self.grace_date


def resolve_window(year: int, month: int, tz: tzinfo = timezone.utc) -> ChallengeWindow:
    """
    Compute the earn window for a challenge month.

    Args:
        year: Challenge year
        month: Challenge month (1-12)
        tz: Timezone in which month boundaries are evaluated

    Returns:
        ChallengeWindow with start, exclusive end and grace date
    """
    if not 1 <= month <= 12:
        raise InputError(f"Invalid month: {month}")

    window_start = datetime(year, month, 1, tzinfo=tz)
    next_year, next_month = _next_month(year, month)
    window_end = datetime(next_year, next_month, 1, tzinfo=tz)
    grace_date = window_start.date() - timedelta(days=1)

    return ChallengeWindow(
        window_start=window_start,
        window_end=window_end,
        grace_date=grace_date,
    )


def window_for_month_key(month_key: str, tz: tzinfo = timezone.utc) -> ChallengeWindow:
    """Compute the earn window for a YYYY-MM month key."""
    year, month = parse_month_key(month_key)
    return resolve_window(year, month, tz)
