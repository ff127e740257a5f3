"""
Minimal Consul HTTP API client.

Covers the endpoints the scenarios need: catalog lookups per namespace,
intention creation and the leader status used to wait for a reachable
server. Request failures surface as ConsulAPIError, which the registration
probe treats as fatal.
"""
from __future__ import annotations

import ssl
from enum import Enum
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError

from convergence.registration import DirectoryError

logger = structlog.get_logger(__name__)


class ConsulAPIError(DirectoryError):
    """Consul could not be reached or answered with an error status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ServiceInstance(BaseModel):
    """One entry of /v1/catalog/service/<name>."""

    service_id: str = Field(..., alias="ServiceID")
    service_name: str = Field(..., alias="ServiceName")
    node: str | None = Field(default=None, alias="Node")
    service_address: str | None = Field(default=None, alias="ServiceAddress")
    service_port: int | None = Field(default=None, alias="ServicePort")
    namespace: str | None = Field(default=None, alias="Namespace")

    model_config = {"populate_by_name": True}


class IntentionAction(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class Intention(BaseModel):
    """Authorization rule between two services, keyed by name and namespace."""

    source_name: str = Field(..., alias="SourceName")
    source_ns: str | None = Field(default=None, alias="SourceNS")
    destination_name: str = Field(..., alias="DestinationName")
    destination_ns: str | None = Field(default=None, alias="DestinationNS")
    action: IntentionAction = Field(default=IntentionAction.ALLOW, alias="Action")

    model_config = {"populate_by_name": True}


class ConsulClient:
    """Synchronous Consul client bound to one agent/server address."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        ca_pem: str | None = None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"X-Consul-Token": token} if token else {}
        verify: Any = True
        if ca_pem:
            # Reached through a port-forward, so the hostname never matches.
            context = ssl.create_default_context(cadata=ca_pem)
            context.check_hostname = False
            verify = context
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            verify=verify,
            transport=transport,
        )

    def __enter__(self) -> ConsulClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ConsulAPIError(f"{method} {path} failed: {exc}") from exc
        if response.is_error:
            raise ConsulAPIError(
                f"{method} {path} returned {response.status_code}: {response.text.strip()}",
                status_code=response.status_code,
            )
        return response

    def catalog_service(
        self,
        name: str,
        tag: str = "",
        namespace: str | None = None,
    ) -> list[ServiceInstance]:
        params: dict[str, str] = {}
        if tag:
            params["tag"] = tag
        if namespace:
            params["ns"] = namespace
        path = f"/v1/catalog/service/{name}"
        response = self._request("GET", path, params=params)
        try:
            instances = [ServiceInstance.model_validate(item) for item in response.json() or []]
        except (TypeError, ValueError, ValidationError) as exc:
            raise ConsulAPIError(f"GET {path} returned an unreadable catalog: {exc}") from exc
        logger.debug("catalog_service", service=name, namespace=namespace, count=len(instances))
        return instances

    # ServiceDirectory protocol
    service = catalog_service

    def create_intention(self, intention: Intention) -> str:
        """Create an intention and return its ID."""
        body = intention.model_dump(by_alias=True, exclude_none=True, mode="json")
        response = self._request("POST", "/v1/connect/intentions", json=body)
        intention_id = response.json().get("ID", "")
        logger.info(
            "intention_created",
            id=intention_id,
            source=f"{intention.source_ns}/{intention.source_name}",
            destination=f"{intention.destination_ns}/{intention.destination_name}",
            action=intention.action.value,
        )
        return intention_id

    def leader(self) -> str:
        """Address of the raft leader, or an empty string while there is none."""
        response = self._request("GET", "/v1/status/leader")
        try:
            return response.json() or ""
        except ValueError as exc:
            raise ConsulAPIError(f"GET /v1/status/leader returned {response.text!r}") from exc
