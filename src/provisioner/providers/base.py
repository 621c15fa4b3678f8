"""Provider adapter contract and error taxonomy.

An adapter translates abstract resource attributes into cloud API calls.
Every adapter exposes the same four operations for every resource kind;
per-kind work lives in ``_put_<kind>``, ``_get_<kind>`` and
``_delete_<kind>`` handlers, looked up by name.

ERRORS: SDK exceptions never leave an adapter. They are mapped to
TransientProviderError (retriable), PermanentProviderError (fail now)
or ResourceNotFoundError.

IDEMPOTENCY: create must be safe to repeat with the same attributes. An
"already exists" response is resolved by reading the existing resource.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..models import CloudTarget
from ..resource_graph import CLUSTER_NODE_ID, ResourceKind
from ..state_store import ObservedState

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Base class for errors surfaced by provider adapters."""

    def __init__(self, message: str, node_id: str | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.node_id = node_id
        self.code = code

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": str(self),
            "code": self.code,
        }


class TransientProviderError(ProviderError):
    """Retriable error: throttling, timeouts, service unavailable, conflicts in flight."""

    pass


class PermanentProviderError(ProviderError):
    """Non-retriable error: invalid parameters, permission denied, quota."""

    pass


class ResourceNotFoundError(ProviderError):
    """The remote resource does not exist."""

    pass


@dataclass(frozen=True)
class ProviderResult:
    """What a provider reports back after a successful operation.

    Attributes:
        identity: Provider identifier for the resource.
        outputs: Provider-populated values (endpoint, FQDN, ARN, subnet ids).
    """

    identity: str | None
    outputs: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResourceRequest:
    """Input to one adapter call.

    Attributes:
        node_id: Resource node id.
        kind: Resource kind.
        attributes: Desired attributes (recorded attributes for delete).
        identity: Recorded provider identity, when one exists.
        before: Recorded attributes for update.
        changed_fields: Top-level attributes that differ (update only).
        inputs: Recorded state of the node's dependencies, keyed by node id.
    """

    node_id: str
    kind: ResourceKind
    attributes: Mapping[str, Any]
    identity: str | None = None
    before: Mapping[str, Any] | None = None
    changed_fields: tuple[str, ...] = ()
    inputs: Mapping[str, ObservedState] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return str(self.attributes["name"])

    def changed(self, *fields: str) -> bool:
        """True if any of ``fields`` changed in this update."""
        return any(f in self.changed_fields for f in fields)

    def dependency(self, ref: str) -> ObservedState:
        """Recorded state for a dependency node id.

        Raises:
            PermanentProviderError: If the dependency has no record.
        """
        state = self.inputs.get(ref)
        if state is None:
            raise PermanentProviderError(
                f"Dependency '{ref}' of '{self.node_id}' has no recorded state",
                node_id=self.node_id,
            )
        return state

    def resolve(self, ref: str | None) -> str | None:
        """Provider identity for a reference.

        A reference is either a node id in the graph (resolved through the
        recorded dependency) or an external provider identifier (returned
        as is).
        """
        if ref is None:
            return None
        if ref in self.inputs or _looks_like_node_id(ref):
            return self.dependency(ref).identity
        return ref

    def output(self, ref: str, key: str) -> Any:
        """A provider output recorded for a dependency."""
        outputs = self.dependency(ref).outputs
        if key not in outputs:
            raise PermanentProviderError(
                f"Dependency '{ref}' of '{self.node_id}' has no output '{key}'",
                node_id=self.node_id,
            )
        return outputs[key]

    @property
    def cluster(self) -> ObservedState:
        return self.dependency(CLUSTER_NODE_ID)


_NODE_ID_PREFIXES = tuple(f"{kind.value}:" for kind in ResourceKind)
_SINGLETON_IDS = frozenset({ResourceKind.NETWORK.value, ResourceKind.CLUSTER.value})


def _looks_like_node_id(ref: str) -> bool:
    return ref in _SINGLETON_IDS or ref.startswith(_NODE_ID_PREFIXES)


Handler = Callable[[ResourceRequest], ProviderResult]


class ProviderAdapter(ABC):
    """CRUD for every resource kind on one cloud.

    Subclasses set ``cloud`` and ``sdk_errors`` and implement
    ``translate_error`` plus the per-kind handlers. All methods are
    blocking; the scheduler runs them in executor threads.
    """

    cloud: CloudTarget
    # Exception types raised by the cloud SDK that translate_error maps
    sdk_errors: tuple[type[Exception], ...] = ()

    def create(self, request: ResourceRequest) -> ProviderResult:
        """Create the resource, or adopt it if it already exists."""
        return self._call("put", request)

    def read(self, request: ResourceRequest) -> ProviderResult:
        """Read the resource.

        Raises:
            ResourceNotFoundError: If it does not exist.
        """
        return self._call("get", request)

    def update(self, request: ResourceRequest) -> ProviderResult:
        """Converge an existing resource on the desired attributes."""
        return self._call("put", request)

    def delete(self, request: ResourceRequest) -> ProviderResult:
        """Delete the resource.

        Raises:
            ResourceNotFoundError: If it was already gone.
        """
        return self._call("delete", request)

    def _call(self, action: str, request: ResourceRequest) -> ProviderResult:
        handler = self._handler(action, request.kind)
        logger.debug(
            "Provider call",
            extra={
                "cloud": self.cloud.value,
                "action": action,
                "node_id": request.node_id,
            },
        )
        try:
            return handler(request)
        except ProviderError as e:
            if e.node_id is None:
                e.node_id = request.node_id
            raise
        except self.sdk_errors as e:
            raise self.translate_error(e, request.node_id) from e

    def _handler(self, action: str, kind: ResourceKind) -> Handler:
        handler = getattr(self, f"_{action}_{kind.value.replace('-', '_')}", None)
        if handler is None:
            raise PermanentProviderError(
                f"{self.cloud.value} adapter does not support '{action}' for {kind.value}"
            )
        return handler  # type: ignore[no-any-return]

    @abstractmethod
    def translate_error(self, error: Exception, node_id: str) -> ProviderError:
        """Map an SDK exception onto the provider error taxonomy."""
