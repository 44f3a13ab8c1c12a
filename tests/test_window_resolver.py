"""
Tests for challenge window resolution.
"""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from challenge_awards.exceptions import InputError
from challenge_awards.window_resolver import (
    format_month_key,
    month_key_for,
    parse_month_key,
    resolve_window,
    window_for_month_key,
)

UTC = timezone.utc


class TestParseMonthKey:
    """Tests for YYYY-MM parsing."""

    def test_valid_key(self):
        assert parse_month_key("2025-02") == (2025, 2)

    def test_december(self):
        assert parse_month_key("2024-12") == (2024, 12)

    @pytest.mark.parametrize("bad", [
        "2025-2", "2025/02", "25-02", "2025-13", "2025-00", "", "abcd-ef", " 2025-02", "2025-02\n",
    ])
    def test_invalid_keys_raise_input_error(self, bad):
        with pytest.raises(InputError):
            parse_month_key(bad)

    def test_non_string_raises(self):
        with pytest.raises(InputError):
            parse_month_key(202502)

    def test_format_month_key(self):
        assert format_month_key(2025, 3) == "2025-03"
        assert month_key_for(date(2025, 11, 30)) == "2025-11"


class TestResolveWindow:
    """Tests for window boundaries."""

    def test_window_bounds(self):
        window = resolve_window(2025, 2)

        assert window.window_start == datetime(2025, 2, 1, tzinfo=UTC)
        assert window.window_end == datetime(2025, 3, 1, tzinfo=UTC)
        assert window.grace_date == date(2025, 1, 31)

    def test_january_grace_date_is_previous_year(self):
        window = resolve_window(2025, 1)
        assert window.grace_date == date(2024, 12, 31)

    def test_december_window_ends_in_next_year(self):
        window = resolve_window(2024, 12)
        assert window.window_end == datetime(2025, 1, 1, tzinfo=UTC)

    def test_leap_year_grace_date(self):
        window = resolve_window(2024, 3)
        assert window.grace_date == date(2024, 2, 29)

    def test_invalid_month(self):
        with pytest.raises(InputError):
            resolve_window(2025, 13)

    def test_month_key_variant(self):
        assert window_for_month_key("2025-02") == resolve_window(2025, 2)


class TestEarnedInWindow:
    """Tests for the in-window predicate."""

    def setup_method(self):
        self.window = resolve_window(2025, 2)

    def test_inside_month(self):
        assert self.window.earned_in_window(datetime(2025, 2, 14, 12, 0, tzinfo=UTC))

    def test_first_instant_is_included(self):
        assert self.window.earned_in_window(datetime(2025, 2, 1, 0, 0, tzinfo=UTC))

    def test_window_end_is_excluded(self):
        assert not self.window.earned_in_window(datetime(2025, 3, 1, 0, 0, tzinfo=UTC))

    def test_grace_day_late_night_counts(self):
        assert self.window.earned_in_window(datetime(2025, 1, 31, 23, 59, 59, tzinfo=UTC))

    def test_grace_day_early_morning_counts(self):
        assert self.window.earned_in_window(datetime(2025, 1, 31, 0, 0, 1, tzinfo=UTC))

    def test_day_after_month_end_does_not_count(self):
        assert not self.window.earned_in_window(datetime(2025, 3, 1, 0, 0, 1, tzinfo=UTC))

    def test_day_before_grace_day_does_not_count(self):
        assert not self.window.earned_in_window(datetime(2025, 1, 30, 23, 59, 59, tzinfo=UTC))

    def test_none_is_not_earned(self):
        assert not self.window.earned_in_window(None)

    def test_naive_timestamp_read_in_window_timezone(self):
        assert self.window.earned_in_window(datetime(2025, 2, 10, 8, 0))
        assert not self.window.earned_in_window(datetime(2025, 3, 2, 8, 0))

    def test_deterministic(self):
        ts = datetime(2025, 1, 31, 22, 0, tzinfo=UTC)
        assert self.window.earned_in_window(ts) == self.window.earned_in_window(ts)


class TestTimezoneWindows:
    """Tests for windows evaluated outside UTC."""

    def test_grace_date_evaluated_in_window_timezone(self):
        tz = ZoneInfo("America/New_York")
        window = resolve_window(2025, 2, tz)

        # 03:30 UTC on Feb 1 is still Jan 31 in New York: grace day
        assert window.earned_in_window(datetime(2025, 2, 1, 3, 30, tzinfo=UTC))
        # 04:30 UTC on Mar 1 is still Feb 28 in New York: inside the month
        assert window.earned_in_window(datetime(2025, 3, 1, 4, 30, tzinfo=UTC))
        # 05:30 UTC on Mar 1 is Mar 1 in New York: outside
        assert not window.earned_in_window(datetime(2025, 3, 1, 5, 30, tzinfo=UTC))
