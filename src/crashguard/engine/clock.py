# src/crashguard/engine/clock.py
"""Clock abstraction for testable time-dependent logic.

Provides a Clock protocol that abstracts time access, enabling
deterministic testing of interval triggers, debounce gaps, session
duration, and checkpoint ages.

Production code uses SystemClock (the default).
Tests inject MockClock to control time advancement.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Abstract clock.

    Implementations:
    - SystemClock: time.monotonic() and datetime.now(UTC) (production)
    - MockClock: controllable times (testing)
    """

    def monotonic(self) -> float:
        """Return monotonic time in seconds.

        Must never go backwards. Used for intervals and durations.
        """
        ...

    def now(self) -> datetime:
        """Return the current wall-clock time, timezone-aware (UTC).

        Used for persisted timestamps (created_at, restored_at).
        """
        ...


class SystemClock:
    """Production clock using time.monotonic() and datetime.now(UTC)."""

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(UTC)


class MockClock:
    """Controllable clock for deterministic testing.

    advance() moves monotonic and wall-clock time together.

    Example:
        clock = MockClock(start=0.0)
        engine = TriggerEngine(settings, collector, counters, clock=clock)

        clock.advance(601.0)
        assert engine.should_checkpoint().reason == CheckpointTrigger.TIME_INTERVAL
    """

    def __init__(self, start: float = 0.0, wall_start: datetime | None = None) -> None:
        """Initialize mock clock.

        Args:
            start: Initial monotonic time value (default 0.0).
            wall_start: Initial wall-clock time (default 2026-01-01T00:00:00Z).
        """
        self._current = start
        self._wall = wall_start if wall_start is not None else datetime(2026, 1, 1, tzinfo=UTC)

    def monotonic(self) -> float:
        return self._current

    def now(self) -> datetime:
        return self._wall

    def advance(self, seconds: float) -> None:
        """Advance mock time by specified seconds.

        Raises:
            ValueError: If seconds is negative.
        """
        if seconds < 0:
            raise ValueError(f"Cannot advance time by negative amount: {seconds}")
        self._current += seconds
        self._wall += timedelta(seconds=seconds)

    def set(self, value: float) -> None:
        """Set monotonic time to an absolute value (wall clock unchanged)."""
        self._current = value

    def set_wall(self, value: datetime) -> None:
        """Set wall-clock time to an absolute value (monotonic unchanged)."""
        if value.tzinfo is None:
            raise ValueError("wall-clock time must be timezone-aware")
        self._wall = value


# Default clock for production use
DEFAULT_CLOCK: Clock = SystemClock()
