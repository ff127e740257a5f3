"""
Retry budgets and the clock that spaces attempts out.

A RetryBudget is a value object built once per assertion: how many times a
probe may run and how long to wait between runs. The wall-clock ceiling is
max_attempts * interval; probe execution time comes on top of it.
"""
from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class RetryBudget:
    """Bounded number of probe attempts separated by a fixed interval."""

    max_attempts: int
    interval: float

    def __post_init__(self) -> None:
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
            raise ValueError(f"max_attempts must be an integer, got {self.max_attempts!r}")
        if self.max_attempts <= 0:
            raise ValueError(f"max_attempts must be > 0, got {self.max_attempts}")
        if self.interval < 0:
            raise ValueError(f"interval must be >= 0, got {self.interval}")

    @property
    def ceiling(self) -> float:
        """Nominal total wall-clock time, excluding probe execution."""
        return self.max_attempts * self.interval

    @classmethod
    def for_duration(cls, timeout: float, interval: float) -> RetryBudget:
        """Budget that keeps retrying for roughly ``timeout`` seconds."""
        if timeout < 0:
            raise ValueError(f"timeout must be >= 0, got {timeout}")
        if interval <= 0:
            return cls(max_attempts=1, interval=0.0)
        return cls(max_attempts=max(1, math.ceil(round(timeout / interval, 9))), interval=interval)

    @classmethod
    def immediate(cls) -> RetryBudget:
        """Single attempt, no sleep: assert the state right now."""
        return cls(max_attempts=1, interval=0.0)


# Consul SDK retry.Run default: 7 s at 25 ms.
DEFAULT_BUDGET = RetryBudget.for_duration(7.0, 0.025)
CONNECTIVITY_BUDGET = RetryBudget.for_duration(20.0, 0.5)
REGISTRATION_BUDGET = RetryBudget.for_duration(60.0, 1.0)


class Clock(Protocol):
    """Time source used by the checker; swapped for a fake in tests."""

    def monotonic(self) -> float: ...

    def sleep(self, seconds: float, cancel: threading.Event | None = None) -> None: ...


class SystemClock:
    """Real clock. Blocks the calling thread between attempts."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, cancel: threading.Event | None = None) -> None:
        if seconds <= 0:
            return
        if cancel is not None:
            # Wakes early when the cancellation event fires.
            cancel.wait(seconds)
        else:
            time.sleep(seconds)
