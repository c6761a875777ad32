"""
Clock abstraction and timestamp helpers.

Screening ranks a universe "as of now". Reading the system clock directly
would make screens impossible to reproduce in tests, so components that need
"now" take a Clock and call clock.now(). Production wires a RealClock, tests
and replays wire a FrozenClock.

Internally the engine works with timezone-naive pandas Timestamps that
represent UTC instants. `to_engine_timestamp` converts anything a caller might
hand in (date, datetime, ISO string, aware or naive) into that form.
"""

from datetime import date, datetime, timezone
from typing import Protocol

import pandas as pd


class Clock(Protocol):
    """Anything that can answer "what time is it?"."""

    def now(self) -> datetime:
        """Return the current time (timezone-aware, UTC)."""
        ...


class RealClock:
    """Clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """
    Clock pinned to a fixed instant.

    **Usage**:
        clock = FrozenClock(datetime(2024, 6, 28, tzinfo=timezone.utc))
        service = EngineService(provider, clock=clock)
        service.screen(criteria)   # ranks as of 2024-06-28
    """

    def __init__(self, fixed_now: datetime):
        if fixed_now.tzinfo is None:
            fixed_now = fixed_now.replace(tzinfo=timezone.utc)
        self._fixed_now = fixed_now

    def now(self) -> datetime:
        return self._fixed_now


def to_engine_timestamp(value: date | datetime | str | pd.Timestamp) -> pd.Timestamp:
    """
    Convert a date-like value into a timezone-naive UTC pandas Timestamp.

    Aware values are converted to UTC first and then stripped of their zone;
    naive values are taken to already be UTC.

    Raises:
        ValueError: If the value cannot be parsed as a timestamp.
    """
    try:
        ts = pd.Timestamp(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Cannot interpret {value!r} as a timestamp: {e}")
    if ts is pd.NaT:
        raise ValueError(f"Cannot interpret {value!r} as a timestamp")
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts


def clock_timestamp(clock: Clock) -> pd.Timestamp:
    """Current time of `clock` as an engine timestamp."""
    return to_engine_timestamp(clock.now())
