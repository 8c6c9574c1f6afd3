"""
consolidator/control_plane/safe_window.py
─────────────────────────────────────────
Time-of-day gate for disruptive operations.

  Weekdays (Mon–Fri)  02:00 – 05:00
  Weekends (Sat, Sun) 01:00 – 07:00

All times are naive local wall-clock times of the evaluating process.

  inside today's window    → is_now=True,  bounds of the current window
  before today's window    → is_now=False, today's window
  at/after today's window  → is_now=False, tomorrow's window, sized by
                             tomorrow's own day type (Fri 10:00 → Sat 01:00)

A scheduled migration is only a description of future work; nothing here
sleeps or sets timers.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, tzinfo
from typing import Dict, Optional, Tuple

from consolidator.shared.models import SafeWindow

WEEKDAY_WINDOW: Tuple[int, int] = (2, 5)
"""Start and end hour (end exclusive) on Monday to Friday."""

WEEKEND_WINDOW: Tuple[int, int] = (1, 7)
"""Start and end hour (end exclusive) on Saturday and Sunday."""

_WINDOWS: Dict[bool, Tuple[int, int]] = {False: WEEKDAY_WINDOW, True: WEEKEND_WINDOW}


def is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def window_for(day: date, tz: Optional[tzinfo] = None) -> Tuple[datetime, datetime]:
    start_hour, end_hour = _WINDOWS[is_weekend(day)]
    return (
        datetime.combine(day, time(hour=start_hour), tzinfo=tz),
        datetime.combine(day, time(hour=end_hour), tzinfo=tz),
    )


def find_safe_window(now: datetime) -> SafeWindow:
    start, end = window_for(now.date(), now.tzinfo)
    if start <= now < end:
        return SafeWindow(is_now=True, start=start, end=end)
    if now < start:
        return SafeWindow(is_now=False, start=start, end=end)

    next_start, next_end = window_for(now.date() + timedelta(days=1), now.tzinfo)
    return SafeWindow(is_now=False, start=next_start, end=next_end)
