"""Exceptions raised when a convergence check does not converge."""
from __future__ import annotations


class ConvergenceError(AssertionError):
    """Base class; an AssertionError so test runners report a plain failure."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class RetriesExhaustedError(ConvergenceError):
    """The retry budget ran out before the probe reported success."""

    def __init__(self, last_diagnostic: str, attempts: int, description: str = "") -> None:
        prefix = f"{description}: " if description else ""
        super().__init__(
            f"{prefix}did not converge after {attempts} attempt(s): {last_diagnostic}",
            attempts,
        )
        self.last_diagnostic = last_diagnostic


class FatalProbeError(ConvergenceError):
    """The probe reported a failure that retries cannot fix."""

    def __init__(self, error: Exception, attempts: int, description: str = "") -> None:
        prefix = f"{description}: " if description else ""
        super().__init__(f"{prefix}{error}", attempts)
        self.error = error
