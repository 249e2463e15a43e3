"""Rolling time-window counting used by the posting quotas."""

from datetime import datetime, timedelta
from typing import Iterable, Union

Window = Union[timedelta, int, float]


def _as_timedelta(window: Window) -> timedelta:
    """Accept a timedelta or a duration in milliseconds."""
    if isinstance(window, timedelta):
        return window
    return timedelta(milliseconds=window)


def count_recent(events: Iterable, window: Window, now: datetime) -> int:
    """
    Count events whose timestamp falls inside the rolling window ending at `now`.

    An event is recent when `now - event.timestamp < window`. Events stamped in
    the future (clock skew) produce a negative difference and are counted.

    Parameters:
        events: Objects exposing a `timestamp` datetime.
        window: Window length as a timedelta or in milliseconds.
        now: End of the window.

    Returns:
        int: Number of recent events.
    """
    span = _as_timedelta(window)
    return sum(1 for event in events if now - event.timestamp < span)
