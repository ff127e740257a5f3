"""
Log into an Azure Red Hat OpenShift cluster and prepare the ``consul`` project.

    python -m acceptance.openshift <resource_group> <cluster_name>

Credentials come from the Azure CLI. The login goes to a per-cluster
kubeconfig (~/.kube/<cluster_name>) and is retried while the API server
settles; the project creation is idempotent.
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path

import structlog

from acceptance.kubectl import CommandError, check_output, run_command
from acceptance.log import configure_logging
from convergence import SUCCESS, Probe, ProbeResult, RetryableFailure
from convergence.budget import RetryBudget
from convergence.checker import eventually

logger = structlog.get_logger(__name__)

LOGIN_BUDGET = RetryBudget(max_attempts=20, interval=5.0)
CONSUL_PROJECT = "consul"


@dataclass(frozen=True)
class ClusterCredentials:
    api_server: str
    username: str
    password: str

    def __repr__(self) -> str:
        return f"ClusterCredentials(api_server={self.api_server!r}, username={self.username!r})"


def kubeconfig_path(cluster_name: str) -> Path:
    return Path.home() / ".kube" / cluster_name


def fetch_credentials(resource_group: str, cluster_name: str) -> ClusterCredentials:
    """Read the API server URL and kubeadmin credentials through ``az aro``."""
    api_server = check_output(
        [
            "az", "aro", "show",
            "-g", resource_group,
            "-n", cluster_name,
            "--query", "apiserverProfile.url",
            "-o", "tsv",
        ]
    ).strip()
    raw = check_output(["az", "aro", "list-credentials", "-g", resource_group, "-n", cluster_name])
    creds = json.loads(raw)
    return ClusterCredentials(
        api_server=api_server,
        username=creds["kubeadminUsername"],
        password=creds["kubeadminPassword"],
    )


def login_probe(credentials: ClusterCredentials, kubeconfig: Path) -> Probe:
    env = {**os.environ, "KUBECONFIG": str(kubeconfig)}
    cmd = [
        "oc", "login", credentials.api_server,
        "-u", credentials.username,
        "-p", credentials.password,
    ]

    def probe() -> ProbeResult:
        result = run_command(cmd, env=env)
        if result.returncode != 0:
            return RetryableFailure((result.stderr or result.stdout or "").strip())
        return SUCCESS

    return probe


def ensure_project(kubeconfig: Path, project: str = CONSUL_PROJECT) -> None:
    """Create ``project`` unless it exists, then switch to it."""
    env = {**os.environ, "KUBECONFIG": str(kubeconfig)}
    try:
        check_output(["oc", "new-project", project], env=env)
        logger.info("project_created", project=project)
    except CommandError as exc:
        if "AlreadyExists" not in exc.output and "already exists" not in exc.output:
            raise
        logger.info("project_exists", project=project)
    check_output(["oc", "project", project], env=env)


def login(resource_group: str, cluster_name: str, budget: RetryBudget = LOGIN_BUDGET) -> Path:
    credentials = fetch_credentials(resource_group, cluster_name)
    kubeconfig = kubeconfig_path(cluster_name)
    kubeconfig.parent.mkdir(parents=True, exist_ok=True)

    logger.info("oc_login", api_server=credentials.api_server, kubeconfig=str(kubeconfig))
    eventually(
        login_probe(credentials, kubeconfig),
        budget,
        description=f"oc login to {credentials.api_server}",
    )
    ensure_project(kubeconfig)
    return kubeconfig


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("resource_group")
    parser.add_argument("cluster_name")
    parser.add_argument("--log-level", default="info")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    kubeconfig = login(args.resource_group, args.cluster_name)
    print(f"KUBECONFIG={kubeconfig}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
