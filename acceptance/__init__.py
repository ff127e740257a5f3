"""
Acceptance scenarios package.

Provides the ScenarioResult dataclass used by all scenario modules.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ScenarioResult:
    """Result of a single scenario run for a single configuration case."""

    scenario_name: str
    case: str
    expected_outcome: str
    actual_outcome: str
    correct: bool
    skipped: bool = False
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
