"""Mock provider adapter with in-memory resources and error injection."""

from __future__ import annotations

import copy
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from provisioner.models import CloudTarget
from provisioner.providers.base import (
    PermanentProviderError,
    ProviderAdapter,
    ProviderError,
    ProviderResult,
    ResourceNotFoundError,
    ResourceRequest,
)
from provisioner.resource_graph import ResourceKind


@dataclass
class MockResource:
    """A provisioned resource as the mock cloud sees it."""

    node_id: str
    kind: ResourceKind
    identity: str
    attributes: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderCall:
    """One recorded adapter call."""

    action: str
    node_id: str
    sequence: int


class MockProvider(ProviderAdapter):
    """Provider adapter backed by a dict.

    Dependencies referenced through attributes (``cluster``, ``role``,
    ``network``) must have recorded state when created or updated, so an
    out-of-order call fails the same way a real cloud would.
    """

    cloud = CloudTarget.AWS

    def __init__(self, cloud: CloudTarget = CloudTarget.AWS, delay_seconds: float = 0.0) -> None:
        self.cloud = cloud
        self.delay_seconds = delay_seconds
        self.resources: dict[str, MockResource] = {}
        self.calls: list[ProviderCall] = []
        self.max_active = 0

        self._active = 0
        self._failures: dict[str, list[Exception]] = {}
        self._always_fail: dict[str, Exception] = {}
        self._lock = threading.Lock()

    # -- error injection ------------------------------------------------------

    def fail(self, node_id: str, error: Exception, times: int | None = 1) -> None:
        """Raise ``error`` for the next ``times`` calls on a node (forever if None)."""
        if times is None:
            self._always_fail[node_id] = error
        else:
            self._failures.setdefault(node_id, []).extend([error] * times)

    def _injected_error(self, node_id: str) -> Exception | None:
        with self._lock:
            if node_id in self._always_fail:
                return self._always_fail[node_id]
            pending = self._failures.get(node_id)
            if pending:
                return pending.pop(0)
        return None

    # -- call log -------------------------------------------------------------

    def calls_for(self, node_id: str) -> list[str]:
        """Actions called for one node, in order."""
        return [c.action for c in self.calls if c.node_id == node_id]

    @property
    def called_nodes(self) -> set[str]:
        return {c.node_id for c in self.calls}

    def reset_calls(self) -> None:
        self.calls.clear()
        self.max_active = 0

    # -- ProviderAdapter ------------------------------------------------------

    def create(self, request: ResourceRequest) -> ProviderResult:
        return self._invoke("create", request)

    def read(self, request: ResourceRequest) -> ProviderResult:
        return self._invoke("read", request)

    def update(self, request: ResourceRequest) -> ProviderResult:
        return self._invoke("update", request)

    def delete(self, request: ResourceRequest) -> ProviderResult:
        return self._invoke("delete", request)

    def translate_error(self, error: Exception, node_id: str) -> ProviderError:
        return PermanentProviderError(str(error), node_id=node_id)

    def _invoke(self, action: str, request: ResourceRequest) -> ProviderResult:
        with self._lock:
            self.calls.append(ProviderCall(action, request.node_id, len(self.calls)))
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            if self.delay_seconds:
                time.sleep(self.delay_seconds)
            error = self._injected_error(request.node_id)
            if error is not None:
                raise error
            return getattr(self, f"_{action}")(request)
        finally:
            with self._lock:
                self._active -= 1

    def _create(self, request: ResourceRequest) -> ProviderResult:
        self._check_dependencies(request)
        existing = self.resources.get(request.node_id)
        identity = existing.identity if existing else self._identity(request)
        resource = MockResource(
            node_id=request.node_id,
            kind=request.kind,
            identity=identity,
            attributes=copy.deepcopy(dict(request.attributes)),
            outputs=self._outputs(request),
        )
        self.resources[request.node_id] = resource
        return ProviderResult(identity=resource.identity, outputs=dict(resource.outputs))

    def _read(self, request: ResourceRequest) -> ProviderResult:
        resource = self._existing(request)
        return ProviderResult(identity=resource.identity, outputs=dict(resource.outputs))

    def _update(self, request: ResourceRequest) -> ProviderResult:
        resource = self._existing(request)
        self._check_dependencies(request)
        resource.attributes = copy.deepcopy(dict(request.attributes))
        resource.outputs = self._outputs(request)
        return ProviderResult(identity=resource.identity, outputs=dict(resource.outputs))

    def _delete(self, request: ResourceRequest) -> ProviderResult:
        resource = self._existing(request)
        del self.resources[request.node_id]
        return ProviderResult(identity=resource.identity)

    def _existing(self, request: ResourceRequest) -> MockResource:
        resource = self.resources.get(request.node_id)
        if resource is None:
            raise ResourceNotFoundError(
                f"{request.node_id} does not exist", node_id=request.node_id, code="NotFound"
            )
        return resource

    def _check_dependencies(self, request: ResourceRequest) -> None:
        for key in ("cluster", "role", "network"):
            request.resolve(request.attributes.get(key))

    def _identity(self, request: ResourceRequest) -> str:
        name = request.attributes.get("name", request.node_id)
        return f"mock://{self.cloud.value}/{request.kind.value}/{name}"

    def _outputs(self, request: ResourceRequest) -> dict[str, Any]:
        a = request.attributes
        name = a.get("name", request.node_id)
        if request.kind == ResourceKind.CLUSTER:
            return {
                "endpoint": f"https://{name}.k8s.mock.example",
                "fqdn": f"{name}.k8s.mock.example",
                "oidc_issuer": f"https://oidc.mock.example/{name}",
                "subnet_ids": list(a.get("subnet_ids") or ["subnet-mock-a", "subnet-mock-b"]),
            }
        if request.kind == ResourceKind.IAM_ROLE:
            return {"name": name, "arn": f"arn:mock:iam::000000000000:role/{name}"}
        if request.kind == ResourceKind.NETWORK:
            return {"subnet_ids": [f"subnet-{s['name']}" for s in a.get("subnets", [])]}
        return {}
