"""Suite configuration pulled from environment variables."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class SuiteConfig:
    """Settings shared by every scenario in one run."""

    enable_enterprise: bool
    no_cleanup_on_failure: bool
    debug_directory: Path | None
    kubeconfig: str | None
    kube_context: str | None
    kube_namespace: str
    helm_chart: str
    consul_image: str | None
    consul_k8s_image: str | None
    enterprise_license: str | None
    helm_timeout: str
    results_dir: Path

    def helm_values(self) -> dict[str, str]:
        """Chart overrides that apply to every release in the run."""
        values: dict[str, str] = {}
        if self.consul_image:
            values["global.image"] = self.consul_image
        if self.consul_k8s_image:
            values["global.imageK8S"] = self.consul_k8s_image
        if self.enterprise_license:
            values["server.enterpriseLicense.secretName"] = "license"
            values["server.enterpriseLicense.secretKey"] = "key"
        return values


def _to_bool(value: str, *, default: bool = False) -> bool:
    """Normalize common truthy values from environment variables."""
    if not value:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def load_config() -> SuiteConfig:
    """Build an immutable config object for the runner and scenarios."""
    debug_dir = _optional("DEBUG_DIRECTORY")
    return SuiteConfig(
        enable_enterprise=_to_bool(os.getenv("ENABLE_ENTERPRISE", "false")),
        no_cleanup_on_failure=_to_bool(os.getenv("NO_CLEANUP_ON_FAILURE", "false")),
        debug_directory=Path(debug_dir) if debug_dir else None,
        kubeconfig=_optional("KUBECONFIG"),
        kube_context=_optional("KUBE_CONTEXT"),
        kube_namespace=os.getenv("KUBE_NAMESPACE", "default"),
        helm_chart=os.getenv("CONSUL_HELM_CHART", "hashicorp/consul"),
        consul_image=_optional("CONSUL_IMAGE"),
        consul_k8s_image=_optional("CONSUL_K8S_IMAGE"),
        enterprise_license=_optional("CONSUL_ENT_LICENSE"),
        helm_timeout=os.getenv("HELM_TIMEOUT", "15m"),
        results_dir=Path(os.getenv("RESULTS_DIR", "results")),
    )
