"""Tests for consolidator/control_plane/safe_window.py"""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from consolidator.control_plane.safe_window import find_safe_window, is_weekend, window_for


class TestSafeWindow:
    """2024-01-03 is a Wednesday, 2024-01-05 a Friday, 2024-01-07 a Sunday."""

    def test_inside_weekday_window(self) -> None:
        window = find_safe_window(datetime(2024, 1, 3, 3, 0))
        assert window.is_now
        assert window.start == datetime(2024, 1, 3, 2, 0)
        assert window.end == datetime(2024, 1, 3, 5, 0)

    def test_before_todays_window(self) -> None:
        window = find_safe_window(datetime(2024, 1, 3, 1, 30))
        assert not window.is_now
        assert window.start == datetime(2024, 1, 3, 2, 0)

    def test_after_weekday_window_rolls_to_tomorrow(self) -> None:
        window = find_safe_window(datetime(2024, 1, 3, 10, 0))
        assert not window.is_now
        assert window.start == datetime(2024, 1, 4, 2, 0)
        assert window.end == datetime(2024, 1, 4, 5, 0)

    def test_window_end_is_exclusive(self) -> None:
        window = find_safe_window(datetime(2024, 1, 3, 5, 0))
        assert not window.is_now
        assert window.start == datetime(2024, 1, 4, 2, 0)

    def test_friday_rolls_to_saturday_window(self) -> None:
        window = find_safe_window(datetime(2024, 1, 5, 10, 0))
        assert window.start == datetime(2024, 1, 6, 1, 0)
        assert window.end == datetime(2024, 1, 6, 7, 0)

    def test_sunday_rolls_to_monday_window(self) -> None:
        window = find_safe_window(datetime(2024, 1, 7, 8, 0))
        assert window.start == datetime(2024, 1, 8, 2, 0)
        assert window.end == datetime(2024, 1, 8, 5, 0)

    def test_inside_weekend_window(self) -> None:
        assert find_safe_window(datetime(2024, 1, 6, 6, 59)).is_now

    def test_timezone_is_preserved(self) -> None:
        window = find_safe_window(datetime(2024, 1, 3, 10, 0, tzinfo=timezone.utc))
        assert window.start == datetime(2024, 1, 4, 2, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("day, weekend", [
        (date(2024, 1, 5), False),
        (date(2024, 1, 6), True),
        (date(2024, 1, 7), True),
    ])
    def test_is_weekend(self, day, weekend) -> None:
        assert is_weekend(day) is weekend

    def test_window_for_weekend(self) -> None:
        start, end = window_for(date(2024, 1, 6))
        assert (start.hour, end.hour) == (1, 7)
