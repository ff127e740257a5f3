"""
Connect inject with Consul Enterprise namespaces.

Installs Consul with namespaces enabled, deploys static-server into ns1 and
static-client into ns2, and checks:

1. Both services register into the expected Consul namespace: the mirrored
   one when mirroringK8S is set, the single destination namespace otherwise.
2. With ACLs on, the connection fails until an intention allows it.
3. Kubernetes readiness is synced to Consul: once static-server is made
   unhealthy, the client can no longer connect.

Only non-secure and secure-without-auto-encrypt installs are covered; the
namespace code paths do not differ for auto-encrypt.
"""
from __future__ import annotations

import structlog

from acceptance import ScenarioResult
from acceptance.helm import HelmCluster
from acceptance.kubectl import (
    check_static_server_connection_failing,
    check_static_server_connection_multiple_failure_messages,
    check_static_server_connection_successful,
    create_namespace,
    deploy_kustomize,
    exec_in_deployment,
)
from acceptance.scenarios.common import (
    FIXTURES_DIR,
    STATIC_CLIENT_NAME,
    STATIC_CLIENT_NAMESPACE,
    STATIC_SERVER_NAME,
    STATIC_SERVER_NAMESPACE,
    STATIC_SERVER_UPSTREAM_URL,
    NamespaceCase,
    ScenarioEnvironment,
    assert_registered,
    build_intention,
    namespace_helm_values,
)
from convergence.connectivity import CURL_FAILURE_MESSAGES

logger = structlog.get_logger(__name__)

SCENARIO_NAME = "connect_inject_namespaces"
ENTERPRISE_ONLY = True

CASES = [
    NamespaceCase("single destination namespace", STATIC_SERVER_NAMESPACE, False, False),
    NamespaceCase("single destination namespace; secure", STATIC_SERVER_NAMESPACE, False, True),
    NamespaceCase("mirror k8s namespaces", STATIC_SERVER_NAMESPACE, True, False),
    NamespaceCase("mirror k8s namespaces; secure", STATIC_SERVER_NAMESPACE, True, True),
]


def helm_values(case: NamespaceCase) -> dict[str, str]:
    return namespace_helm_values(case)


def run(case: NamespaceCase, env: ScenarioEnvironment) -> ScenarioResult:
    """Execute the scenario for one case. Assertion failures raise."""
    log = logger.bind(scenario=SCENARIO_NAME, case=case.name, release=env.release_name)

    cluster = HelmCluster(helm_values(case), env.options, env.config, env.release_name, env.scope)
    cluster.create()

    server_opts = env.options.with_namespace(STATIC_SERVER_NAMESPACE)
    client_opts = env.options.with_namespace(STATIC_CLIENT_NAMESPACE)

    log.info("namespaces_create", namespaces=[STATIC_SERVER_NAMESPACE, STATIC_CLIENT_NAMESPACE])
    create_namespace(env.options, STATIC_SERVER_NAMESPACE, env.scope)
    # Deleting ns2 takes longer while static-client is still terminating.
    create_namespace(env.options, STATIC_CLIENT_NAMESPACE, env.scope)

    log.info("deployments_create", deployments=[STATIC_SERVER_NAME, STATIC_CLIENT_NAME])
    debug_dir = env.config.debug_directory
    deploy_kustomize(server_opts, env.scope, FIXTURES_DIR / "static-server-inject", debug_dir)
    deploy_kustomize(client_opts, env.scope, FIXTURES_DIR / "static-client-namespaces", debug_dir)

    consul = cluster.setup_consul_client(case.secure)

    assert_registered(consul, [STATIC_SERVER_NAME], case, STATIC_SERVER_NAMESPACE)
    assert_registered(consul, [STATIC_CLIENT_NAME], case, STATIC_CLIENT_NAMESPACE)

    if case.secure:
        log.info("connection_check", expect="blocked without intention")
        check_static_server_connection_failing(client_opts, STATIC_CLIENT_NAME, STATIC_SERVER_UPSTREAM_URL)
        consul.create_intention(build_intention(case))

    log.info("connection_check", expect="success")
    check_static_server_connection_successful(client_opts, STATIC_CLIENT_NAME, STATIC_SERVER_UPSTREAM_URL)

    # A failing readiness probe must take static-server out of the mesh. With
    # no healthy upstream the proxy resets the connection, unlike an
    # intention denial which gives an empty reply; both are accepted.
    log.info("health_sync_check", action="make static-server unhealthy")
    exec_in_deployment(server_opts, STATIC_SERVER_NAME, "touch", "/tmp/unhealthy")
    check_static_server_connection_multiple_failure_messages(
        client_opts,
        False,
        STATIC_CLIENT_NAME,
        CURL_FAILURE_MESSAGES,
        STATIC_SERVER_UPSTREAM_URL,
    )

    return ScenarioResult(
        scenario_name=SCENARIO_NAME,
        case=case.name,
        expected_outcome="registered in expected namespace; intentions and health sync enforced",
        actual_outcome="converged",
        correct=True,
        details={"release": env.release_name, "secure": case.secure, "mirror_k8s": case.mirror_k8s},
    )
