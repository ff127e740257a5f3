"""
Cleanup controller with Consul Enterprise namespaces.

Force-kills the static-client pod (grace period 0, so no preStop hook
deregisters it) and expects the cleanup controller to remove its service
and sidecar instances from the Consul namespace they were registered in.
"""
from __future__ import annotations

import structlog

from acceptance import ScenarioResult
from acceptance.helm import HelmCluster
from acceptance.kubectl import create_namespace, delete_pod, deploy_kustomize, list_pods
from acceptance.scenarios.common import (
    FIXTURES_DIR,
    STATIC_CLIENT_NAME,
    STATIC_CLIENT_NAMESPACE,
    NamespaceCase,
    ScenarioEnvironment,
    assert_registered,
    consul_namespace,
    namespace_helm_values,
    sidecar_name,
)
from convergence.budget import REGISTRATION_BUDGET
from convergence.checker import eventually
from convergence.registration import absence_probe

logger = structlog.get_logger(__name__)

SCENARIO_NAME = "cleanup_controller"
ENTERPRISE_ONLY = True

CONSUL_DEST_NAMESPACE = "consul-dest"

CASES = [
    NamespaceCase("single destination namespace", CONSUL_DEST_NAMESPACE, False, False),
    NamespaceCase("single destination namespace; secure", CONSUL_DEST_NAMESPACE, False, True),
    NamespaceCase("mirror k8s namespaces", CONSUL_DEST_NAMESPACE, True, False),
    NamespaceCase("mirror k8s namespaces; secure", CONSUL_DEST_NAMESPACE, True, True),
]

SERVICE_NAMES = (STATIC_CLIENT_NAME, sidecar_name(STATIC_CLIENT_NAME))


def helm_values(case: NamespaceCase) -> dict[str, str]:
    return namespace_helm_values(case)


def run(case: NamespaceCase, env: ScenarioEnvironment) -> ScenarioResult:
    log = logger.bind(scenario=SCENARIO_NAME, case=case.name, release=env.release_name)

    cluster = HelmCluster(helm_values(case), env.options, env.config, env.release_name, env.scope)
    cluster.create()

    create_namespace(env.options, STATIC_CLIENT_NAMESPACE, env.scope)

    client_opts = env.options.with_namespace(STATIC_CLIENT_NAMESPACE)
    log.info("deployment_create", deployment=STATIC_CLIENT_NAME)
    deploy_kustomize(
        client_opts,
        env.scope,
        FIXTURES_DIR / "static-client-namespaces",
        env.config.debug_directory,
    )

    consul = cluster.setup_consul_client(case.secure)
    log.info("registration_wait", services=list(SERVICE_NAMES))
    assert_registered(consul, SERVICE_NAMES, case, STATIC_CLIENT_NAMESPACE)

    pods = list_pods(client_opts, f"app={STATIC_CLIENT_NAME}")
    if len(pods) != 1:
        raise AssertionError(f"expected 1 {STATIC_CLIENT_NAME} pod, found {len(pods)}: {pods}")
    pod_name = pods[0]

    log.info("pod_force_kill", pod=pod_name)
    delete_pod(client_opts, pod_name, grace_period=0)

    expected_ns = consul_namespace(case, STATIC_CLIENT_NAMESPACE)
    log.info("deregistration_wait", pod=pod_name, namespace=expected_ns)
    eventually(
        absence_probe(consul, SERVICE_NAMES, expected_ns, pod_name),
        REGISTRATION_BUDGET,
        description=f"instances of pod {pod_name} deregistered",
    )

    return ScenarioResult(
        scenario_name=SCENARIO_NAME,
        case=case.name,
        expected_outcome="force-killed pod deregistered from Consul",
        actual_outcome="converged",
        correct=True,
        details={"release": env.release_name, "pod": pod_name, "consul_namespace": expected_ns},
    )
