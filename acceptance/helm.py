"""
Consul Helm release lifecycle.

HelmCluster installs the chart with per-case values, registers its own
teardown on the case's CleanupScope and hands out a ConsulClient reaching
the first server through a kubectl port-forward.
"""
from __future__ import annotations

import base64
import socket
import subprocess
from collections.abc import Mapping

import structlog

from acceptance.cleanup import CleanupScope
from acceptance.config import SuiteConfig
from acceptance.consul import ConsulAPIError, ConsulClient
from acceptance.kubectl import KubectlOptions, check_output, run_kubectl, run_kubectl_output
from convergence import SUCCESS, Probe, ProbeResult, RetryableFailure
from convergence.budget import RetryBudget
from convergence.checker import eventually

logger = structlog.get_logger(__name__)

PORT_FORWARD_BUDGET = RetryBudget.for_duration(60.0, 1.0)


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _stop(proc: subprocess.Popen) -> None:
    proc.terminate()
    try:
        proc.wait(timeout=10)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


class HelmCluster:
    """One Consul release installed into the cluster for one scenario case."""

    def __init__(
        self,
        values: Mapping[str, str],
        options: KubectlOptions,
        config: SuiteConfig,
        release_name: str,
        scope: CleanupScope,
    ) -> None:
        self.values = {**config.helm_values(), **values}
        self.options = options
        self.config = config
        self.release_name = release_name
        self.scope = scope

    def _helm_flags(self) -> list[str]:
        flags: list[str] = []
        if self.options.context_name:
            flags += ["--kube-context", self.options.context_name]
        if self.options.config_path:
            flags += ["--kubeconfig", self.options.config_path]
        if self.options.namespace:
            flags += ["--namespace", self.options.namespace]
        return flags

    def install_command(self) -> list[str]:
        cmd = [
            "helm",
            "install",
            self.release_name,
            self.config.helm_chart,
            *self._helm_flags(),
            "--wait",
            "--timeout",
            self.config.helm_timeout,
        ]
        for key, value in sorted(self.values.items()):
            cmd += ["--set", f"{key}={value}"]
        return cmd

    def create(self) -> None:
        if self.config.enterprise_license:
            run_kubectl(
                self.options,
                "create",
                "secret",
                "generic",
                "license",
                f"--from-literal=key={self.config.enterprise_license}",
            )
            self.scope.defer(run_kubectl, self.options, "delete", "secret", "license", "--ignore-not-found")

        # Registered before install so a half-finished release is still removed.
        self.scope.defer(self.destroy)
        logger.info("helm_install", release=self.release_name, chart=self.config.helm_chart)
        check_output(self.install_command())

    def destroy(self) -> None:
        logger.info("helm_uninstall", release=self.release_name)
        check_output(["helm", "uninstall", self.release_name, *self._helm_flags()])
        # The chart leaves these behind; a later release with the same name would trip on them.
        selector = f"release={self.release_name}"
        for kind in ("pvc", "secret", "serviceaccount"):
            run_kubectl(self.options, "delete", kind, "-l", selector, "--ignore-not-found")

    def secret_value(self, name: str, key: str) -> str:
        escaped = key.replace(".", "\\.")
        raw = run_kubectl_output(self.options, "get", "secret", name, "-o", f"jsonpath={{.data.{escaped}}}")
        return base64.b64decode(raw.strip()).decode()

    def setup_consul_client(self, secure: bool) -> ConsulClient:
        """Port-forward to the first server and return a client once it has a leader."""
        server_pod = f"{self.release_name}-consul-server-0"
        remote_port = 8501 if secure else 8500
        local_port = _free_port()

        cmd = [
            "kubectl",
            *self.options.args(),
            "port-forward",
            f"pod/{server_pod}",
            f"{local_port}:{remote_port}",
        ]
        proc = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        self.scope.defer(_stop, proc, always=True)

        token = ca_pem = None
        if secure:
            token = self.secret_value(f"{self.release_name}-consul-bootstrap-acl-token", "token")
            ca_pem = self.secret_value(f"{self.release_name}-consul-ca-cert", "tls.crt")

        scheme = "https" if secure else "http"
        client = ConsulClient(f"{scheme}://127.0.0.1:{local_port}", token=token, ca_pem=ca_pem)
        self.scope.defer(client.close, always=True)

        eventually(
            leader_probe(client),
            PORT_FORWARD_BUDGET,
            description=f"consul leader through port-forward to {server_pod}",
        )
        logger.info("consul_client_ready", pod=server_pod, local_port=local_port, secure=secure)
        return client


def leader_probe(client: ConsulClient) -> Probe:
    """Retry until the port-forward is up and the servers elected a leader."""

    def probe() -> ProbeResult:
        try:
            leader = client.leader()
        except ConsulAPIError as exc:
            # The port-forward takes a moment to start listening.
            return RetryableFailure(str(exc))
        if not leader:
            return RetryableFailure("no leader elected yet")
        return SUCCESS

    return probe
