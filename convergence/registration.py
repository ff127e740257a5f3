"""
Registration probe.

Queries a service directory (the Consul catalog in practice) for the
instances of a service in one namespace. A failed query is fatal: it means
credentials or connectivity are misconfigured, which no retry fixes. A
wrong instance count, or a lingering instance, is retryable.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from functools import partial
from typing import Protocol

import structlog

from convergence import SUCCESS, FatalFailure, Probe, ProbeResult, RetryableFailure
from convergence.checker import all_of

logger = structlog.get_logger(__name__)


class DirectoryError(Exception):
    """A service directory query could not be answered."""


class Instance(Protocol):
    service_id: str


class ServiceDirectory(Protocol):
    def service(self, name: str, tag: str = "", namespace: str | None = None) -> Sequence[Instance]: ...


@dataclass(frozen=True)
class RegistrationSnapshot:
    """Instance IDs per service name, as seen in one namespace at one moment."""

    namespace: str
    instances: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def count(self, service_name: str) -> int:
        return len(self.instances.get(service_name, ()))

    def find(self, service_name: str, substring: str) -> list[str]:
        """IDs of ``service_name`` instances containing ``substring``."""
        return [sid for sid in self.instances.get(service_name, ()) if substring in sid]


def take_snapshot(
    directory: ServiceDirectory,
    service_names: Iterable[str],
    namespace: str,
) -> RegistrationSnapshot:
    """Query every service name once. DirectoryError propagates."""
    instances: dict[str, tuple[str, ...]] = {}
    for name in service_names:
        found = directory.service(name, "", namespace=namespace)
        instances[name] = tuple(instance.service_id for instance in found)
    logger.debug("registration_snapshot", namespace=namespace, instances=instances)
    return RegistrationSnapshot(namespace=namespace, instances=instances)


def check_count(
    directory: ServiceDirectory,
    service_name: str,
    namespace: str,
    expected: int,
) -> ProbeResult:
    try:
        snapshot = take_snapshot(directory, [service_name], namespace)
    except DirectoryError as exc:
        return FatalFailure(exc)

    found = snapshot.count(service_name)
    if found != expected:
        return RetryableFailure(
            f"expected {expected} instance(s) of {service_name} in namespace {namespace!r}, found {found}"
        )
    return SUCCESS


def check_absent(
    directory: ServiceDirectory,
    service_name: str,
    namespace: str,
    instance_identifier_substring: str,
) -> ProbeResult:
    try:
        snapshot = take_snapshot(directory, [service_name], namespace)
    except DirectoryError as exc:
        return FatalFailure(exc)

    lingering = snapshot.find(service_name, instance_identifier_substring)
    if lingering:
        return RetryableFailure(f"{', '.join(lingering)} still registered in namespace {namespace!r}")
    return SUCCESS


def count_probe(
    directory: ServiceDirectory,
    service_names: Iterable[str],
    namespace: str,
    expected: int,
) -> Probe:
    """Closure checking that each of ``service_names`` has ``expected`` instances."""
    return all_of(*(partial(check_count, directory, name, namespace, expected) for name in service_names))


def absence_probe(
    directory: ServiceDirectory,
    service_names: Iterable[str],
    namespace: str,
    instance_identifier_substring: str,
) -> Probe:
    """Closure checking that no instance of ``service_names`` matches the substring."""
    return all_of(
        *(
            partial(check_absent, directory, name, namespace, instance_identifier_substring)
            for name in service_names
        )
    )
