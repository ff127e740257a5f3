"""
kubectl wrappers backed by subprocess calls.

Kubernetes resources are only ever touched through the kubectl CLI. Every
call carries explicit context/kubeconfig/namespace flags from a
KubectlOptions value instead of relying on whatever the ambient
kubeconfig points at.
"""
from __future__ import annotations

import json
import subprocess
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from pathlib import Path

import structlog

from acceptance.cleanup import CleanupScope
from convergence.budget import CONNECTIVITY_BUDGET, RetryBudget
from convergence.checker import eventually
from convergence.connectivity import (
    CURL_FAILURE_MESSAGES,
    Fetcher,
    RequestFailed,
    connection_probe,
)

logger = structlog.get_logger(__name__)

COMMAND_TIMEOUT = 600
DEPLOYMENT_TIMEOUT = "5m"


@dataclass(frozen=True)
class KubectlOptions:
    """Which cluster and namespace a kubectl call targets."""

    context_name: str | None = None
    config_path: str | None = None
    namespace: str | None = None

    def with_namespace(self, namespace: str) -> KubectlOptions:
        return replace(self, namespace=namespace)

    def args(self) -> list[str]:
        flags: list[str] = []
        if self.context_name:
            flags += ["--context", self.context_name]
        if self.config_path:
            flags += ["--kubeconfig", self.config_path]
        if self.namespace:
            flags += ["--namespace", self.namespace]
        return flags


class CommandError(Exception):
    """A CLI call exited non-zero."""

    def __init__(self, cmd: list[str], returncode: int, output: str) -> None:
        super().__init__(f"{' '.join(cmd[:3])} ... exited {returncode}: {output.strip()}")
        self.cmd = cmd
        self.returncode = returncode
        self.output = output


def run_command(
    cmd: list[str],
    *,
    env: Mapping[str, str] | None = None,
    timeout: float = COMMAND_TIMEOUT,
) -> subprocess.CompletedProcess:
    """Run ``cmd`` without a shell, capturing text output. Never raises on exit code."""
    # Arguments may carry credentials; only the program and verb are logged.
    logger.debug("command_run", program=cmd[0], verb=cmd[1] if len(cmd) > 1 else None)
    return subprocess.run(
        cmd,
        check=False,
        capture_output=True,
        text=True,
        timeout=timeout,
        env=dict(env) if env is not None else None,
    )


def check_output(cmd: list[str], *, env: Mapping[str, str] | None = None) -> str:
    """Run ``cmd`` and return stdout, raising CommandError on a non-zero exit."""
    result = run_command(cmd, env=env)
    if result.returncode != 0:
        raise CommandError(cmd, result.returncode, (result.stdout or "") + (result.stderr or ""))
    return result.stdout or ""


def run_kubectl_output(options: KubectlOptions, *args: str) -> str:
    return check_output(["kubectl", *options.args(), *args])


def run_kubectl(options: KubectlOptions, *args: str) -> None:
    run_kubectl_output(options, *args)


def create_namespace(options: KubectlOptions, name: str, scope: CleanupScope) -> None:
    """Create namespace ``name`` and delete it when ``scope`` exits."""
    cluster = replace(options, namespace=None)
    logger.info("namespace_create", namespace=name)
    run_kubectl(cluster, "create", "ns", name)
    scope.defer(run_kubectl, cluster, "delete", "ns", name, "--ignore-not-found")


def deploy_kustomize(
    options: KubectlOptions,
    scope: CleanupScope,
    kustomize_dir: Path,
    debug_directory: Path | None = None,
    timeout: str = DEPLOYMENT_TIMEOUT,
) -> None:
    """Apply a kustomize directory and wait for its deployments to become available."""
    logger.info("kustomize_apply", dir=str(kustomize_dir), namespace=options.namespace)
    run_kubectl(options, "apply", "-k", str(kustomize_dir))
    scope.defer(run_kubectl, options, "delete", "-k", str(kustomize_dir), "--ignore-not-found")
    if debug_directory is not None:
        # Runs before the delete above (LIFO), and also when resources are kept.
        scope.defer(
            _dump_on_failure,
            scope,
            options,
            debug_directory,
            kustomize_dir.name,
            always=True,
        )

    run_kubectl(
        options,
        "wait",
        "--for=condition=available",
        f"--timeout={timeout}",
        "deployment",
        "--all",
    )


def _dump_on_failure(
    scope: CleanupScope,
    options: KubectlOptions,
    debug_directory: Path,
    label: str,
) -> None:
    if not scope.failed:
        return
    out_dir = debug_directory / (options.namespace or "default")
    out_dir.mkdir(parents=True, exist_ok=True)
    for name, args in (
        ("resources", ("get", "all", "-o", "yaml")),
        ("events", ("get", "events", "--sort-by=.lastTimestamp")),
    ):
        result = run_command(["kubectl", *options.args(), *args])
        (out_dir / f"{label}-{name}.txt").write_text((result.stdout or "") + (result.stderr or ""))
    logger.info("debug_output_written", dir=str(out_dir))


def list_pods(options: KubectlOptions, selector: str) -> list[str]:
    """Names of pods matching the label selector in the options' namespace."""
    raw = run_kubectl_output(options, "get", "pods", "-l", selector, "-o", "json")
    return [item["metadata"]["name"] for item in json.loads(raw).get("items", [])]


def delete_pod(options: KubectlOptions, name: str, grace_period: int = 0) -> None:
    args = ["delete", "pod", name, f"--grace-period={grace_period}", "--wait=false"]
    if grace_period == 0:
        args.append("--force")
    run_kubectl(options, *args)


def exec_in_deployment(options: KubectlOptions, deployment: str, *command: str) -> str:
    return run_kubectl_output(options, "exec", f"deploy/{deployment}", "--", *command)


def exec_curl_fetcher(options: KubectlOptions, deployment: str) -> Fetcher:
    """Fetcher that curls a URL from inside ``deployment``'s main container."""

    def fetch(url: str) -> str:
        cmd = [
            "kubectl",
            *options.args(),
            "exec",
            f"deploy/{deployment}",
            "-c",
            deployment,
            "--",
            "curl",
            "-vvvsSf",
            url,
        ]
        result = run_command(cmd)
        if result.returncode != 0:
            raise RequestFailed((result.stdout or "") + (result.stderr or ""))
        return result.stdout or ""

    return fetch


def check_static_server_connection_multiple_failure_messages(
    options: KubectlOptions,
    expect_success: bool,
    client_name: str,
    failure_messages: Iterable[str],
    url: str,
    budget: RetryBudget = CONNECTIVITY_BUDGET,
) -> None:
    """Assert, eventually, that ``client_name`` can (or cannot) reach ``url``."""
    expectation = "succeed" if expect_success else "fail"
    probe = connection_probe(
        url,
        expect_success,
        failure_messages,
        fetch=exec_curl_fetcher(options, client_name),
    )
    eventually(probe, budget, description=f"connection from {client_name} to {url} should {expectation}")


def check_static_server_connection_successful(
    options: KubectlOptions,
    client_name: str,
    url: str,
    budget: RetryBudget = CONNECTIVITY_BUDGET,
) -> None:
    check_static_server_connection_multiple_failure_messages(
        options, True, client_name, CURL_FAILURE_MESSAGES, url, budget
    )


def check_static_server_connection_failing(
    options: KubectlOptions,
    client_name: str,
    url: str,
    budget: RetryBudget = CONNECTIVITY_BUDGET,
) -> None:
    """Connection blocked by a missing intention: the proxy returns an empty reply."""
    check_static_server_connection_multiple_failure_messages(
        options, False, client_name, ["curl: (52) Empty reply from server"], url, budget
    )
