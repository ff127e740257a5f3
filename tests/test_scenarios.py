"""Scenario tables, namespace mapping and scenario bodies with faked collaborators."""

from __future__ import annotations

import pytest
from structlog.testing import capture_logs

from acceptance.cleanup import CleanupScope
from acceptance.config import load_config
from acceptance.kubectl import KubectlOptions
from acceptance.scenarios import cleanup_controller, connect_inject_namespaces, root_service_accounts
from acceptance.scenarios.common import (
    STATIC_CLIENT_NAMESPACE,
    STATIC_SERVER_NAMESPACE,
    NamespaceCase,
    ScenarioEnvironment,
    assert_registered,
    build_intention,
    consul_namespace,
    unused_namespace,
)
from convergence.budget import RetryBudget
from convergence.connectivity import CURL_FAILURE_MESSAGES
from convergence.errors import RetriesExhaustedError

MIRRORED = NamespaceCase("mirror", "consul-dest", True, False)
SINGLE_DEST = NamespaceCase("single", "consul-dest", False, True)
FAST = RetryBudget(max_attempts=3, interval=0.0)


def test_case_tables_cover_mirroring_and_security() -> None:
    for module in (connect_inject_namespaces, cleanup_controller):
        assert {(c.mirror_k8s, c.secure) for c in module.CASES} == {
            (False, False),
            (False, True),
            (True, False),
            (True, True),
        }
    assert all(c.mirror_k8s for c in root_service_accounts.CASES)


def test_namespace_helm_values() -> None:
    values = cleanup_controller.helm_values(SINGLE_DEST)
    assert values == {
        "global.enableConsulNamespaces": "true",
        "connectInject.enabled": "true",
        "connectInject.consulNamespaces.consulDestinationNamespace": "consul-dest",
        "connectInject.consulNamespaces.mirroringK8S": "false",
        "global.acls.manageSystemACLs": "true",
        "global.tls.enabled": "true",
    }


def test_root_service_account_values() -> None:
    values = root_service_accounts.helm_values(root_service_accounts.CASES[0])
    assert values["connectInject.rootServiceAccountName"] == "default"
    assert values["connectInject.consulNamespaces.mirroringK8S"] == "true"
    assert "connectInject.consulNamespaces.consulDestinationNamespace" not in values


def test_consul_namespace_mapping() -> None:
    assert consul_namespace(MIRRORED, STATIC_CLIENT_NAMESPACE) == "ns2"
    assert consul_namespace(SINGLE_DEST, STATIC_CLIENT_NAMESPACE) == "consul-dest"
    assert unused_namespace(MIRRORED, STATIC_CLIENT_NAMESPACE) == "consul-dest"
    assert unused_namespace(SINGLE_DEST, STATIC_CLIENT_NAMESPACE) == "ns2"


def test_unused_namespace_none_when_modes_agree() -> None:
    case = NamespaceCase("single", STATIC_SERVER_NAMESPACE, False, False)
    assert unused_namespace(case, STATIC_SERVER_NAMESPACE) is None


def test_intention_follows_mirroring() -> None:
    mirrored = build_intention(NamespaceCase("m", STATIC_SERVER_NAMESPACE, True, True))
    assert (mirrored.source_ns, mirrored.destination_ns) == ("ns2", "ns1")

    single = build_intention(NamespaceCase("s", STATIC_SERVER_NAMESPACE, False, True))
    assert (single.source_ns, single.destination_ns) == ("ns1", "ns1")


@pytest.mark.parametrize("case", [MIRRORED, SINGLE_DEST])
def test_registered_in_exactly_one_namespace(directory, case: NamespaceCase) -> None:
    expected = consul_namespace(case, STATIC_CLIENT_NAMESPACE)
    directory.services[(expected, "static-client")] = ["pod-a-static-client"]
    assert_registered(directory, ["static-client"], case, STATIC_CLIENT_NAMESPACE, budget=FAST)


@pytest.mark.parametrize("case", [MIRRORED, SINGLE_DEST])
def test_registration_in_both_namespaces_fails(directory, case: NamespaceCase) -> None:
    directory.services[("ns2", "static-client")] = ["pod-a-static-client"]
    directory.services[("consul-dest", "static-client")] = ["pod-a-static-client"]
    with pytest.raises(RetriesExhaustedError, match="not registered in"):
        assert_registered(directory, ["static-client"], case, STATIC_CLIENT_NAMESPACE, budget=FAST)


@pytest.mark.parametrize("case", [MIRRORED, SINGLE_DEST])
def test_registration_in_wrong_namespace_fails(directory, case: NamespaceCase) -> None:
    other = unused_namespace(case, STATIC_CLIENT_NAMESPACE)
    directory.services[(other, "static-client")] = ["pod-a-static-client"]
    with pytest.raises(RetriesExhaustedError, match="found 0"):
        assert_registered(directory, ["static-client"], case, STATIC_CLIENT_NAMESPACE, budget=FAST)


def test_cleanup_controller_body(monkeypatch: pytest.MonkeyPatch, directory) -> None:
    monkeypatch.setattr("convergence.budget.time.sleep", lambda _s: None)
    pod = "static-client-5c4d-q8z"
    ns = consul_namespace(SINGLE_DEST, STATIC_CLIENT_NAMESPACE)
    directory.services[(ns, "static-client")] = [f"{pod}-static-client"]
    directory.services[(ns, "static-client-sidecar-proxy")] = [f"{pod}-static-client-sidecar-proxy"]
    events: list[str] = []

    class FakeCluster:
        def __init__(self, values, options, config, release_name, scope) -> None:
            assert values["connectInject.consulNamespaces.mirroringK8S"] == "false"

        def create(self) -> None:
            events.append("helm install")

        def setup_consul_client(self, secure: bool):
            assert secure is True
            return directory

    def fake_delete_pod(options, name, grace_period=0):
        assert (name, grace_period) == (pod, 0)
        events.append("delete pod")
        directory.services[(ns, "static-client")] = []
        directory.services[(ns, "static-client-sidecar-proxy")] = []

    monkeypatch.setattr(cleanup_controller, "HelmCluster", FakeCluster)
    monkeypatch.setattr(cleanup_controller, "create_namespace", lambda o, name, s: events.append(f"ns {name}"))
    monkeypatch.setattr(cleanup_controller, "deploy_kustomize", lambda o, s, d, dbg: events.append(d.name))
    monkeypatch.setattr(cleanup_controller, "list_pods", lambda o, selector: [pod])
    monkeypatch.setattr(cleanup_controller, "delete_pod", fake_delete_pod)

    with CleanupScope() as scope, capture_logs() as logs:
        env = ScenarioEnvironment(load_config(), KubectlOptions(), scope, "test-abc123")
        result = cleanup_controller.run(SINGLE_DEST, env)

    assert result.correct
    # create_namespace logs its own event.
    assert [e for e in logs if e["event"] == "namespace_create"] == []
    assert result.details["consul_namespace"] == "consul-dest"
    assert events == ["helm install", "ns ns2", "static-client-namespaces", "delete pod"]


class IntentionDirectory:
    """Service directory that also accepts intentions, like ConsulClient."""

    def __init__(self, directory, events: list[str]) -> None:
        self.services = directory.services
        self.service = directory.service
        self.events = events
        self.intentions: list = []

    def create_intention(self, intention) -> str:
        self.events.append("intention")
        self.intentions.append(intention)
        return "8f2e"


def _fake_cluster(events: list[str], consul, expected_values: dict[str, str]):
    class FakeCluster:
        def __init__(self, values, options, config, release_name, scope) -> None:
            for key, value in expected_values.items():
                assert values[key] == value

        def create(self) -> None:
            events.append("helm install")

        def setup_consul_client(self, secure: bool):
            return consul

    return FakeCluster


def _register(consul, case: NamespaceCase, k8s_namespace: str, *names: str) -> None:
    ns = consul_namespace(case, k8s_namespace)
    for name in names:
        consul.services[(ns, name)] = [f"{name}-7d9f-abcde-{name}"]


@pytest.mark.parametrize("case", connect_inject_namespaces.CASES, ids=lambda c: c.name)
def test_connect_inject_namespaces_body(
    monkeypatch: pytest.MonkeyPatch, directory, case: NamespaceCase
) -> None:
    events: list[str] = []
    consul = IntentionDirectory(directory, events)
    _register(consul, case, STATIC_SERVER_NAMESPACE, "static-server")
    _register(consul, case, STATIC_CLIENT_NAMESPACE, "static-client")
    module = connect_inject_namespaces

    monkeypatch.setattr(
        module,
        "HelmCluster",
        _fake_cluster(events, consul, {"global.tls.enabled": "true" if case.secure else "false"}),
    )
    monkeypatch.setattr(module, "create_namespace", lambda o, name, s: events.append(f"ns {name}"))
    monkeypatch.setattr(module, "deploy_kustomize", lambda o, s, d, dbg: events.append(f"{o.namespace} {d.name}"))

    def failing(opts, client, url):
        events.append(f"{opts.namespace} blocked {client} -> {url}")

    def successful(opts, client, url):
        events.append(f"{opts.namespace} reaches {client} -> {url}")

    def exec_in(opts, deployment, *command):
        events.append(f"{opts.namespace} exec {deployment}: {' '.join(command)}")
        return ""

    def multiple(opts, expect_success, client, messages, url):
        assert expect_success is False
        assert tuple(messages) == tuple(CURL_FAILURE_MESSAGES)
        events.append(f"{opts.namespace} unhealthy {client} -> {url}")

    monkeypatch.setattr(module, "check_static_server_connection_failing", failing)
    monkeypatch.setattr(module, "check_static_server_connection_successful", successful)
    monkeypatch.setattr(module, "exec_in_deployment", exec_in)
    monkeypatch.setattr(module, "check_static_server_connection_multiple_failure_messages", multiple)

    with CleanupScope() as scope:
        env = ScenarioEnvironment(load_config(), KubectlOptions(), scope, "test-abc123")
        result = module.run(case, env)

    assert result.correct
    setup = ["helm install", "ns ns1", "ns ns2", "ns1 static-server-inject", "ns2 static-client-namespaces"]
    gated = ["ns2 blocked static-client -> http://localhost:1234", "intention"] if case.secure else []
    checks = [
        "ns2 reaches static-client -> http://localhost:1234",
        "ns1 exec static-server: touch /tmp/unhealthy",
        "ns2 unhealthy static-client -> http://localhost:1234",
    ]
    assert events == setup + gated + checks
    if case.secure:
        assert consul.intentions == [build_intention(case)]
    else:
        assert consul.intentions == []


@pytest.mark.parametrize("case", root_service_accounts.CASES, ids=lambda c: c.name)
def test_root_service_accounts_body(monkeypatch: pytest.MonkeyPatch, directory, case: NamespaceCase) -> None:
    events: list[str] = []
    _register(directory, case, STATIC_CLIENT_NAMESPACE, "static-client", "static-client-sidecar-proxy")
    _register(directory, case, STATIC_SERVER_NAMESPACE, "static-server", "static-server-sidecar-proxy")
    module = root_service_accounts

    monkeypatch.setattr(
        module,
        "HelmCluster",
        _fake_cluster(events, directory, {"connectInject.rootServiceAccountName": "default"}),
    )
    monkeypatch.setattr(module, "create_namespace", lambda o, name, s: events.append(f"ns {name}"))
    monkeypatch.setattr(module, "deploy_kustomize", lambda o, s, d, dbg: events.append(f"{o.namespace} {d.name}"))

    with CleanupScope() as scope:
        env = ScenarioEnvironment(load_config(), KubectlOptions(), scope, "test-abc123")
        result = module.run(case, env)

    assert result.correct
    assert events == [
        "helm install",
        "ns ns1",
        "ns ns2",
        "ns2 static-client-default-svc-account",
        "ns1 static-server-inject",
    ]
    assert {ns for _, ns in directory.queries} == {"ns1", "ns2"}


def test_root_service_accounts_needs_sidecars(monkeypatch: pytest.MonkeyPatch, directory) -> None:
    monkeypatch.setattr("convergence.budget.time.sleep", lambda _s: None)
    case = root_service_accounts.CASES[0]
    _register(directory, case, STATIC_CLIENT_NAMESPACE, "static-client", "static-client-sidecar-proxy")
    _register(directory, case, STATIC_SERVER_NAMESPACE, "static-server")
    module = root_service_accounts

    monkeypatch.setattr(module, "HelmCluster", _fake_cluster([], directory, {}))
    monkeypatch.setattr(module, "create_namespace", lambda o, name, s: None)
    monkeypatch.setattr(module, "deploy_kustomize", lambda o, s, d, dbg: None)

    with pytest.raises(RetriesExhaustedError, match="static-server-sidecar-proxy"):
        with CleanupScope() as scope:
            env = ScenarioEnvironment(load_config(), KubectlOptions(), scope, "test-abc123")
            module.run(case, env)
