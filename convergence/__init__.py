"""
Convergence package.

Provides the ProbeResult variants returned by every probe and consumed by
the retry driver in convergence.checker.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Union


class ProbeState(str, Enum):
    """Lifecycle of a single convergence check."""

    PENDING = "pending"
    CONVERGED = "converged"
    ABORTED = "aborted"


@dataclass(frozen=True)
class Success:
    """The observed state is the desired one."""


@dataclass(frozen=True)
class RetryableFailure:
    """The system has not converged yet; try again after the interval."""

    diagnostic: str


@dataclass(frozen=True)
class FatalFailure:
    """A condition no amount of retrying can fix (bad query, bad credentials)."""

    error: Exception

    @property
    def diagnostic(self) -> str:
        return str(self.error)


ProbeResult = Union[Success, RetryableFailure, FatalFailure]

Probe = Callable[[], ProbeResult]

SUCCESS = Success()
