"""
Root service account with mirrored namespaces.

static-client runs under the namespace's ``default`` service account, which
is also configured as the chart's rootServiceAccountName. If both workloads
and their sidecars register, the service account worked: with ACLs on, the
consul login would fail otherwise. Connectivity is not checked.
"""
from __future__ import annotations

import structlog

from acceptance import ScenarioResult
from acceptance.helm import HelmCluster
from acceptance.kubectl import create_namespace, deploy_kustomize
from acceptance.scenarios.common import (
    FIXTURES_DIR,
    STATIC_CLIENT_NAME,
    STATIC_CLIENT_NAMESPACE,
    STATIC_SERVER_NAME,
    STATIC_SERVER_NAMESPACE,
    NamespaceCase,
    ScenarioEnvironment,
    assert_registered,
    namespace_helm_values,
    sidecar_name,
)

logger = structlog.get_logger(__name__)

SCENARIO_NAME = "root_service_accounts"
ENTERPRISE_ONLY = True

CASES = [
    NamespaceCase("mirror k8s namespaces", None, True, False),
    NamespaceCase("mirror k8s namespaces; secure", None, True, True),
]


def helm_values(case: NamespaceCase) -> dict[str, str]:
    values = namespace_helm_values(case)
    values["connectInject.rootServiceAccountName"] = "default"
    return values


def run(case: NamespaceCase, env: ScenarioEnvironment) -> ScenarioResult:
    log = logger.bind(scenario=SCENARIO_NAME, case=case.name, release=env.release_name)

    cluster = HelmCluster(helm_values(case), env.options, env.config, env.release_name, env.scope)
    cluster.create()

    log.info("namespaces_create", namespaces=[STATIC_SERVER_NAMESPACE, STATIC_CLIENT_NAMESPACE])
    create_namespace(env.options, STATIC_SERVER_NAMESPACE, env.scope)
    create_namespace(env.options, STATIC_CLIENT_NAMESPACE, env.scope)

    debug_dir = env.config.debug_directory
    deploy_kustomize(
        env.options.with_namespace(STATIC_CLIENT_NAMESPACE),
        env.scope,
        FIXTURES_DIR / "static-client-default-svc-account",
        debug_dir,
    )
    deploy_kustomize(
        env.options.with_namespace(STATIC_SERVER_NAMESPACE),
        env.scope,
        FIXTURES_DIR / "static-server-inject",
        debug_dir,
    )

    consul = cluster.setup_consul_client(case.secure)
    log.info("registration_wait")
    assert_registered(
        consul, [STATIC_CLIENT_NAME, sidecar_name(STATIC_CLIENT_NAME)], case, STATIC_CLIENT_NAMESPACE
    )
    assert_registered(
        consul, [STATIC_SERVER_NAME, sidecar_name(STATIC_SERVER_NAME)], case, STATIC_SERVER_NAMESPACE
    )

    return ScenarioResult(
        scenario_name=SCENARIO_NAME,
        case=case.name,
        expected_outcome="workloads on the root service account register in mirrored namespaces",
        actual_outcome="converged",
        correct=True,
        details={"release": env.release_name, "secure": case.secure},
    )
