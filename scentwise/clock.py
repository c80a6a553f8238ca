"""Wall-clock access for period bucketing.

Owner tokens rotate on weekly periods and usage counters reset on calendar
months. Both are derived from a Clock so the rollover can be driven
deterministically in tests.
"""

import time
from datetime import datetime
from typing import Protocol

WEEK_SECONDS = 7 * 24 * 60 * 60


class Clock(Protocol):
    """Anything that can report the current Unix time in seconds."""

    def now(self) -> float:
        ...


class SystemClock:
    """Clock backed by time.time()."""

    def now(self) -> float:
        return time.time()


def week_period(timestamp: float) -> int:
    """Return the index of the one-week bucket containing timestamp."""
    return int(timestamp // WEEK_SECONDS)


def month_of(timestamp: float) -> str:
    """Return the local calendar month ("YYYY-MM") containing timestamp."""
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m")
