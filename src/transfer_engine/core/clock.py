"""Injected time source for the lifecycle rules.

Player ages, months left on a contract, the open transfer window, the
expiry sweep date and change timestamps are all read from an ``IClock``.
Production wiring uses ``WallClock``; tests, the CLI demo and what-if
replays drive a ``SimClock`` forward by hand.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Protocol

SEASON_OPENING = datetime(2024, 7, 1, tzinfo=timezone.utc)


class IClock(Protocol):
    def now(self) -> datetime:
        """Aware UTC datetime."""
        ...

    def today(self) -> date:
        """UTC calendar date; the unit every contract and window rule uses."""
        ...


class WallClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self) -> date:
        return self.now().date()


class SimClock:
    """Hand-driven clock, opening on 1 July 2024 (summer window) by default.

    Time only moves forward, so a sweep or window check can never observe
    a date earlier than one it has already seen.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._time = start or SEASON_OPENING

    def now(self) -> datetime:
        return self._time

    def today(self) -> date:
        return self._time.date()

    def set_time(self, t: datetime) -> None:
        if t < self._time:
            raise ValueError(f"SimClock cannot go backwards: {t} < {self._time}")
        self._time = t

    def advance(self, **kwargs: float) -> None:
        """Move forward by ``timedelta(**kwargs)``, e.g. ``advance(days=120)``."""
        self.set_time(self._time + timedelta(**kwargs))

    def move_to(self, day: date) -> None:
        """Jump to midnight UTC of *day*, e.g. the morning of a deadline."""
        self.set_time(datetime.combine(day, time(0), tzinfo=timezone.utc))
