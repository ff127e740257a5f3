"""Shared re-exports for scenario modules used by the runner."""
from __future__ import annotations

from acceptance.scenarios import (
    cleanup_controller,
    connect_inject_namespaces,
    root_service_accounts,
)

__all__ = [
    "cleanup_controller",
    "connect_inject_namespaces",
    "root_service_accounts",
]
