"""
Clock abstraction used by the trigger engine and recorder.

Production code uses SystemClock; tests pass their own object with the
same ``now()``/``tz`` surface to simulate ticks without sleeping.
"""

from datetime import datetime, tzinfo
from typing import Protocol
from zoneinfo import ZoneInfo


class Clock(Protocol):
    """Anything that can tell the current local time."""

    tz: tzinfo

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time in a fixed timezone."""

    def __init__(self, timezone: str = "UTC"):
        self.tz = ZoneInfo(timezone)

    def now(self) -> datetime:
        return datetime.now(self.tz)
