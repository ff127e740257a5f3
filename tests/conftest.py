from __future__ import annotations

import threading
from dataclasses import dataclass, field

import pytest


class FakeClock:
    """Clock that records sleeps and advances time instead of blocking."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float, cancel: threading.Event | None = None) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@dataclass(frozen=True)
class FakeInstance:
    service_id: str


@dataclass
class FakeDirectory:
    """In-memory service directory keyed by (namespace, service name)."""

    services: dict[tuple[str, str], list[str]] = field(default_factory=dict)
    error: Exception | None = None
    queries: list[tuple[str, str | None]] = field(default_factory=list)

    def service(self, name: str, tag: str = "", namespace: str | None = None) -> list[FakeInstance]:
        self.queries.append((name, namespace))
        if self.error is not None:
            raise self.error
        return [FakeInstance(sid) for sid in self.services.get((namespace or "default", name), [])]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()
