"""
Bot Resilience — Clocks

Monotonic millisecond time sources. Components take a clock instead of calling
time.monotonic() directly so tests can move time by hand.

Usage:
    clock = ManualClock()
    limiter = RateLimiter(clock=clock)
    clock.advance(30_000)
"""
import time
from typing import Protocol


class Clock(Protocol):
    def now_ms(self) -> float:
        ...


class MonotonicClock:
    """Process monotonic clock in milliseconds. Never goes backwards."""

    def now_ms(self) -> float:
        return time.monotonic() * 1000.0


class ManualClock:
    """Hand-driven clock for deterministic tests."""

    def __init__(self, start_ms: float = 0.0):
        self._now = float(start_ms)

    def now_ms(self) -> float:
        return self._now

    def advance(self, ms: float):
        self._now += ms

    def set(self, ms: float):
        """Jump to an absolute time. Going backwards simulates clock skew."""
        self._now = float(ms)
