"""
Blue/Green Deployment Controller - Clock.

============================================================
RESPONSIBILITY
============================================================
Unified, testable time source for the controller.

- Every timestamp and every wait goes through a Clock
- Waits are cancellable: an abort wakes the sleeper at once
- MockClock gives deterministic virtual time for tests

============================================================
DESIGN PRINCIPLES
============================================================
- UTC only
- Debounce and timeouts are measured on Clock.now(),
  never by counting polls

============================================================
"""

import asyncio
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


# ============================================================
# CLOCK PROTOCOL
# ============================================================

class Clock(ABC):
    """Abstract interface for the controller clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass

    @abstractmethod
    async def sleep(
        self,
        seconds: float,
        interrupt: Optional[asyncio.Event] = None,
    ) -> bool:
        """
        Wait for `seconds`, or until `interrupt` is set.

        Args:
            seconds: Time to wait
            interrupt: Optional event that ends the wait early

        Returns:
            True if the wait was interrupted
        """
        pass

    def elapsed_since(self, start: datetime) -> float:
        """Seconds elapsed since `start`."""
        return (self.now() - start).total_seconds()


# ============================================================
# SYSTEM CLOCK (PRODUCTION)
# ============================================================

class SystemClock(Clock):
    """
    Production clock using actual system time.
    """

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(
        self,
        seconds: float,
        interrupt: Optional[asyncio.Event] = None,
    ) -> bool:
        if interrupt is None:
            await asyncio.sleep(max(0.0, seconds))
            return False

        if interrupt.is_set():
            return True

        try:
            await asyncio.wait_for(interrupt.wait(), timeout=max(0.0, seconds))
            return True
        except asyncio.TimeoutError:
            return False


# ============================================================
# MOCK CLOCK (TESTING)
# ============================================================

class MockClock(Clock):
    """
    Virtual clock for deterministic tests.

    `sleep` advances virtual time by the requested amount and yields
    to the event loop once, so a full rollout with 30-second steps
    completes in milliseconds of real time.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        """
        Initialize mock clock.

        Args:
            initial_time: Starting time (defaults to current UTC)
        """
        self._time = initial_time or datetime.now(timezone.utc)
        if self._time.tzinfo is None:
            self._time = self._time.replace(tzinfo=timezone.utc)
        self._lock = threading.Lock()
        self.total_slept = 0.0

    def now(self) -> datetime:
        with self._lock:
            return self._time

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Advance time by the specified amount.

        Args:
            seconds: Number of seconds to advance
            **kwargs: Passed to timedelta (minutes, hours, milliseconds, ...)
        """
        with self._lock:
            self._time = self._time + timedelta(seconds=seconds, **kwargs)

    async def sleep(
        self,
        seconds: float,
        interrupt: Optional[asyncio.Event] = None,
    ) -> bool:
        if interrupt is not None and interrupt.is_set():
            return True

        self.advance(max(0.0, seconds))
        self.total_slept += max(0.0, seconds)
        await asyncio.sleep(0)

        return interrupt is not None and interrupt.is_set()
