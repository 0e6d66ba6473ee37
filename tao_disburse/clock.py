"""
Clock -- injectable time and suspension.

The engine never calls ``datetime.now()`` or ``asyncio.sleep()`` directly;
it receives a ``Clock`` so tests can assert timestamps and wait durations
without real elapsed time.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        - ``now()`` returns a timezone-aware UTC ``datetime``.
        - ``sleep()`` is a cooperative suspension.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current UTC time."""
        ...

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for ``seconds``."""
        ...


class SystemClock(Clock):
    """Production clock backed by the system time and the event loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)


class ManualClock(Clock):
    """
    Test clock with controlled time.

    ``sleep()`` returns immediately, advances the clock by the requested
    duration and records it in ``sleeps``.
    """

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
