"""
Convergence checker.

Drives a zero-argument probe against a RetryBudget until the probe reports
Success, reports a FatalFailure, or the budget (or an external cancellation)
runs out. The loop is sequential and blocking; it owns nothing but its own
attempt counter.

    outcome = run(lambda: check_count(catalog, "static-server", "ns1", 1), budget)
    outcome.raise_for_outcome()
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Union

import structlog

from convergence import (
    SUCCESS,
    FatalFailure,
    Probe,
    ProbeResult,
    ProbeState,
    RetryableFailure,
    Success,
)
from convergence.budget import DEFAULT_BUDGET, Clock, RetryBudget, SystemClock
from convergence.errors import FatalProbeError, RetriesExhaustedError

logger = structlog.get_logger(__name__)

NO_ATTEMPT_DIAGNOSTIC = "cancelled before the first attempt"


@dataclass(frozen=True)
class Converged:
    attempts: int

    state = ProbeState.CONVERGED
    ok = True

    def raise_for_outcome(self, description: str = "") -> None:
        return None


@dataclass(frozen=True)
class ExhaustedRetries:
    last_diagnostic: str
    attempts: int
    cancelled: bool = False

    state = ProbeState.ABORTED
    ok = False

    def raise_for_outcome(self, description: str = "") -> None:
        raise RetriesExhaustedError(self.last_diagnostic, self.attempts, description)


@dataclass(frozen=True)
class Fatal:
    error: Exception
    attempts: int

    state = ProbeState.ABORTED
    ok = False

    def raise_for_outcome(self, description: str = "") -> None:
        raise FatalProbeError(self.error, self.attempts, description) from self.error


Outcome = Union[Converged, ExhaustedRetries, Fatal]


def _cancelled(clock: Clock, cancel: threading.Event | None, deadline: float | None) -> bool:
    if cancel is not None and cancel.is_set():
        return True
    return deadline is not None and clock.monotonic() >= deadline


def run(
    probe: Probe,
    budget: RetryBudget = DEFAULT_BUDGET,
    *,
    clock: Clock | None = None,
    cancel: threading.Event | None = None,
    deadline: float | None = None,
    description: str = "",
) -> Outcome:
    """
    Run ``probe`` until it converges, aborts, or the budget is spent.

    ``deadline`` is an absolute value on ``clock.monotonic()``. Once it passes,
    or ``cancel`` is set, no new attempt is started and the result is
    ExhaustedRetries. A probe already running is not interrupted.

    Exceptions raised by the probe itself propagate to the caller.
    """
    clock = clock or SystemClock()
    log = logger.bind(check=description) if description else logger
    last_diagnostic = NO_ATTEMPT_DIAGNOSTIC
    attempts = 0

    while attempts < budget.max_attempts:
        if _cancelled(clock, cancel, deadline):
            log.warning("convergence_cancelled", attempts=attempts, last_diagnostic=last_diagnostic)
            return ExhaustedRetries(last_diagnostic, attempts, cancelled=True)

        attempts += 1
        result: ProbeResult = probe()

        if isinstance(result, Success):
            log.info("convergence_converged", attempts=attempts)
            return Converged(attempts)

        if isinstance(result, FatalFailure):
            log.error("convergence_fatal", attempts=attempts, error=str(result.error))
            return Fatal(result.error, attempts)

        if not isinstance(result, RetryableFailure):
            raise TypeError(f"probe returned {result!r}, expected a ProbeResult")

        last_diagnostic = result.diagnostic
        log.debug(
            "convergence_attempt_failed",
            attempt=attempts,
            max_attempts=budget.max_attempts,
            diagnostic=last_diagnostic,
        )

        if attempts < budget.max_attempts:
            wait = budget.interval
            if deadline is not None:
                wait = min(wait, max(0.0, deadline - clock.monotonic()))
            clock.sleep(wait, cancel)

    log.warning("convergence_exhausted", attempts=attempts, last_diagnostic=last_diagnostic)
    return ExhaustedRetries(last_diagnostic, attempts)


def eventually(
    probe: Probe,
    budget: RetryBudget = DEFAULT_BUDGET,
    *,
    clock: Clock | None = None,
    cancel: threading.Event | None = None,
    deadline: float | None = None,
    description: str = "",
) -> Converged:
    """Like run(), but raises a ConvergenceError unless the probe converged."""
    outcome = run(
        probe,
        budget,
        clock=clock,
        cancel=cancel,
        deadline=deadline,
        description=description,
    )
    outcome.raise_for_outcome(description)
    return outcome  # type: ignore[return-value]


def all_of(*probes: Probe) -> Probe:
    """
    Combine probes into one.

    Every probe runs on each attempt, in order. The first FatalFailure wins;
    otherwise any RetryableFailure makes the combination retryable, with the
    diagnostics joined.
    """

    def combined() -> ProbeResult:
        diagnostics: list[str] = []
        for probe in probes:
            result = probe()
            if isinstance(result, FatalFailure):
                return result
            if isinstance(result, RetryableFailure):
                diagnostics.append(result.diagnostic)
        if diagnostics:
            return RetryableFailure("; ".join(diagnostics))
        return SUCCESS

    return combined
