"""
Shared pieces of the Consul namespace scenarios.

Each scenario module is a data table of NamespaceCase values driving one
shared body. The helpers here answer the questions every body asks: which
Consul namespace a Kubernetes namespace maps to, which Helm values a case
needs, and whether a service is registered where it should be and nowhere
else.
"""
from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from acceptance.cleanup import CleanupScope
from acceptance.config import SuiteConfig
from acceptance.consul import Intention, IntentionAction
from acceptance.kubectl import KubectlOptions
from convergence.budget import REGISTRATION_BUDGET, RetryBudget
from convergence.checker import eventually
from convergence.registration import ServiceDirectory, count_probe

STATIC_SERVER_NAMESPACE = "ns1"
STATIC_CLIENT_NAMESPACE = "ns2"
STATIC_SERVER_NAME = "static-server"
STATIC_CLIENT_NAME = "static-client"
STATIC_SERVER_UPSTREAM_URL = "http://localhost:1234"

FIXTURES_DIR = Path(__file__).resolve().parents[2] / "fixtures" / "cases"


@dataclass(frozen=True)
class NamespaceCase:
    """One row of a scenario's configuration table."""

    name: str
    destination_namespace: str | None
    mirror_k8s: bool
    secure: bool


@dataclass
class ScenarioEnvironment:
    """What a scenario body gets to work with for one case."""

    config: SuiteConfig
    options: KubectlOptions
    scope: CleanupScope
    release_name: str


def random_name() -> str:
    return f"test-{uuid.uuid4().hex[:6]}"


def sidecar_name(service_name: str) -> str:
    return f"{service_name}-sidecar-proxy"


def format_bool(value: bool) -> str:
    return "true" if value else "false"


def namespace_helm_values(case: NamespaceCase) -> dict[str, str]:
    values = {
        "global.enableConsulNamespaces": "true",
        "connectInject.enabled": "true",
        "connectInject.consulNamespaces.mirroringK8S": format_bool(case.mirror_k8s),
        "global.acls.manageSystemACLs": format_bool(case.secure),
        "global.tls.enabled": format_bool(case.secure),
    }
    # Ignored by the chart when mirroring is on.
    if case.destination_namespace is not None:
        values["connectInject.consulNamespaces.consulDestinationNamespace"] = case.destination_namespace
    return values


def consul_namespace(case: NamespaceCase, k8s_namespace: str) -> str:
    """Consul namespace that services from ``k8s_namespace`` register into."""
    if case.mirror_k8s or case.destination_namespace is None:
        return k8s_namespace
    return case.destination_namespace


def unused_namespace(case: NamespaceCase, k8s_namespace: str) -> str | None:
    """The namespace the other mirroring mode would have used, if it differs."""
    alternative = k8s_namespace if not case.mirror_k8s else case.destination_namespace
    if alternative is None or alternative == consul_namespace(case, k8s_namespace):
        return None
    return alternative


def build_intention(case: NamespaceCase) -> Intention:
    """Allow static-client to reach static-server in the case's namespaces."""
    return Intention(
        source_name=STATIC_CLIENT_NAME,
        source_ns=consul_namespace(case, STATIC_CLIENT_NAMESPACE),
        destination_name=STATIC_SERVER_NAME,
        destination_ns=consul_namespace(case, STATIC_SERVER_NAMESPACE),
        action=IntentionAction.ALLOW,
    )


def assert_registered(
    directory: ServiceDirectory,
    service_names: Iterable[str],
    case: NamespaceCase,
    k8s_namespace: str,
    budget: RetryBudget = REGISTRATION_BUDGET,
) -> None:
    """
    Each service has exactly one instance in the namespace the case maps
    ``k8s_namespace`` to, and none in the namespace the other mode would use.
    """
    names = tuple(service_names)
    expected = consul_namespace(case, k8s_namespace)
    eventually(
        count_probe(directory, names, expected, 1),
        budget,
        description=f"{', '.join(names)} registered in {expected}",
    )

    other = unused_namespace(case, k8s_namespace)
    if other is not None:
        eventually(
            count_probe(directory, names, other, 0),
            RetryBudget.immediate(),
            description=f"{', '.join(names)} not registered in {other}",
        )
