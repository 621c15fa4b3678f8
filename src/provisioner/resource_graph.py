"""Resource graph construction and validation.

This module expands a ClusterSpec into a directed acyclic graph of
resource nodes:
1. Node expansion (network, IAM roles, cluster, node pools, add-ons, storage)
2. Dependency wiring so providers are called in a valid order
3. Cycle and dangling-edge detection
4. Topological ordering for creates, reverse ordering for deletes

DEPENDENCY RULES:
- The network precedes the cluster
- IAM roles precede every resource that references them
- The cluster precedes node pools and workload identity bindings
- Node pools precede add-ons (add-on pods need somewhere to run)
- Workload identity bindings precede add-ons that use the bound role
- On AKS and GKE each add-on waits for the previous one, since all of
  them are written through the same cluster object

Building a graph is a pure function of the spec: no provider calls, no
state access.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import (
    SUPPORTED_ADDONS,
    CloudTarget,
    ClusterSpec,
    IamRoleConfig,
    NetworkConfig,
    SpecValidationError,
    is_external_role_reference,
)

logger = logging.getLogger(__name__)

CLUSTER_NODE_ID = "cluster"
NETWORK_NODE_ID = "network"

# Clouds whose add-ons are settings on the cluster object rather than
# separate resources; their add-on writes must not overlap.
CLUSTER_PROFILE_ADDON_CLOUDS = frozenset({CloudTarget.AZURE, CloudTarget.GCP})


class ResourceKind(str, Enum):
    """Kinds of provisionable infrastructure."""

    NETWORK = "network"
    IAM_ROLE = "iam-role"
    IAM_BINDING = "iam-binding"
    CLUSTER = "cluster"
    NODE_POOL = "node-pool"
    ADDON = "addon"
    STORAGE = "storage"


class NodeState(str, Enum):
    """Lifecycle of a node within one reconciliation pass."""

    PLANNED = "planned"
    DIFFED = "diffed"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    BLOCKED = "blocked"


class GraphError(SpecValidationError):
    """Raised for duplicate nodes or broken dependency edges."""

    pass


class CyclicDependencyError(GraphError):
    """Raised when a dependency cycle is detected."""

    pass


class DanglingDependencyError(GraphError):
    """Raised when a node depends on an id that is not in the graph."""

    pass


def node_id(kind: ResourceKind, name: str | None = None) -> str:
    """Build a node id such as ``node-pool:default``."""
    return kind.value if name is None else f"{kind.value}:{name}"


@dataclass
class ResourceNode:
    """One planned unit of infrastructure."""

    id: str
    kind: ResourceKind
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    state: NodeState = NodeState.PLANNED


@dataclass
class ResourceGraph:
    """Directed acyclic graph of resource nodes.

    Edges point from a node to the nodes it depends on.
    """

    nodes: dict[str, ResourceNode] = field(default_factory=dict)

    def add_node(self, node: ResourceNode) -> None:
        """Add a node to the graph.

        Raises:
            GraphError: If a node with the same id already exists.
        """
        if node.id in self.nodes:
            raise GraphError(f"Duplicate resource node '{node.id}'")
        self.nodes[node.id] = node

    def __contains__(self, item: object) -> bool:
        return item in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def validate(self) -> None:
        """Validate dangling edges and cycles.

        Raises:
            DanglingDependencyError: If a dependency id is not a node.
            CyclicDependencyError: If a cycle is detected.
        """
        for node in self.nodes.values():
            missing = [dep for dep in node.depends_on if dep not in self.nodes]
            if missing:
                raise DanglingDependencyError(
                    f"Node '{node.id}' depends on unknown nodes: {missing}"
                )

        order = self._kahn()
        if len(order) != len(self.nodes):
            cycle_nodes = sorted(set(self.nodes) - set(order))
            raise CyclicDependencyError(
                f"Circular dependency detected involving: {cycle_nodes}"
            )

    def topological_sort(self) -> list[str]:
        """Return node ids in dependency order (dependencies first).

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()
        return self._kahn()

    def reverse_topological_sort(self) -> list[str]:
        """Return node ids with dependents before their dependencies."""
        return list(reversed(self.topological_sort()))

    def _kahn(self) -> list[str]:
        dependents = self.dependents_map()
        in_degree: dict[str, int] = {
            node.id: sum(1 for dep in node.depends_on if dep in self.nodes)
            for node in self.nodes.values()
        }

        result: list[str] = []
        queue = [node for node, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def dependents_map(self) -> dict[str, list[str]]:
        """Map each node id to the ids that depend on it directly."""
        dependents: dict[str, list[str]] = {node: [] for node in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in dependents:
                    dependents[dep].append(node.id)
        return dependents

    def transitive_dependents(self, root: str) -> set[str]:
        """All nodes that directly or indirectly depend on ``root``."""
        dependents = self.dependents_map()
        seen: set[str] = set()
        stack = list(dependents.get(root, []))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(dependents.get(current, []))
        return seen

    def get_ready_nodes(self, satisfied: set[str]) -> list[str]:
        """Get nodes whose dependencies are all in ``satisfied``."""
        return sorted(
            node.id
            for node in self.nodes.values()
            if node.id not in satisfied and all(dep in satisfied for dep in node.depends_on)
        )

    def roots(self) -> list[str]:
        """Nodes without dependencies."""
        return sorted(node.id for node in self.nodes.values() if not node.depends_on)


# =============================================================================
# Builder
# =============================================================================


def build_graph(spec: ClusterSpec) -> ResourceGraph:
    """Expand a ClusterSpec into a validated ResourceGraph.

    Args:
        spec: Desired cluster state.

    Returns:
        Acyclic graph where every dependency exists in the graph.

    Raises:
        SpecValidationError: On overlapping CIDRs, duplicate node pools,
            unresolvable role references, inconsistent node counts or
            add-ons the target cloud does not offer.
    """
    return _GraphBuilder(spec).build()


class _GraphBuilder:
    def __init__(self, spec: ClusterSpec) -> None:
        self._spec = spec
        self._graph = ResourceGraph()
        self._roles: dict[str, IamRoleConfig] = {}
        self._bindings: dict[str, str] = {}  # role name -> binding node id

    def build(self) -> ResourceGraph:
        spec = self._spec

        self._check_node_pools()
        self._check_addons()
        if spec.network is not None:
            check_network_cidrs(spec.network)
        self._index_roles()

        self._add_network()
        self._add_roles()
        self._add_cluster()
        self._add_bindings()
        pool_ids = self._add_node_pools()
        self._add_addons(pool_ids)
        self._add_storage()

        self._graph.validate()
        logger.debug(
            "Built resource graph",
            extra={
                "cluster": spec.cluster.name,
                "cloud": spec.cloud.value,
                "node_count": len(self._graph),
            },
        )
        return self._graph

    # -- validation -----------------------------------------------------------

    def _check_node_pools(self) -> None:
        pools = self._spec.node_pools
        if not pools:
            raise SpecValidationError("At least one node pool is required")

        seen: set[str] = set()
        duplicates: set[str] = set()
        for pool in pools:
            if pool.name in seen:
                duplicates.add(pool.name)
            seen.add(pool.name)
        if duplicates:
            raise SpecValidationError(f"Duplicate node pool names: {sorted(duplicates)}")

        for pool in pools:
            desired = pool.effective_desired_count
            if pool.min_count > pool.max_count:
                raise SpecValidationError(
                    f"Node pool '{pool.name}': minCount {pool.min_count} "
                    f"exceeds maxCount {pool.max_count}"
                )
            if not (pool.min_count <= desired <= pool.max_count):
                raise SpecValidationError(
                    f"Node pool '{pool.name}': desiredCount {desired} outside "
                    f"[{pool.min_count}, {pool.max_count}]"
                )
            if not pool.enable_autoscaling and pool.min_count != pool.max_count:
                raise SpecValidationError(
                    f"Node pool '{pool.name}': minCount and maxCount must match "
                    f"when autoscaling is disabled"
                )

    def _check_addons(self) -> None:
        supported = SUPPORTED_ADDONS[self._spec.cloud]
        unsupported = sorted(
            name.value for name in self._spec.enabled_addons if name not in supported
        )
        if unsupported:
            raise SpecValidationError(
                f"Add-ons not available on {self._spec.cloud.value}: {unsupported}"
            )

    def _index_roles(self) -> None:
        for role in self._spec.iam:
            if role.name in self._roles:
                raise SpecValidationError(f"Duplicate IAM role name: '{role.name}'")
            self._roles[role.name] = role

    def _resolve_role(self, reference: str | None, referrer: str) -> tuple[str | None, str | None]:
        """Resolve a role reference to (attribute value, dependency node id)."""
        if reference is None:
            return None, None
        if is_external_role_reference(reference):
            return reference, None

        role = self._roles.get(reference)
        if role is None:
            raise SpecValidationError(
                f"{referrer} references IAM role '{reference}' which is not defined"
            )
        if role.arn:
            return role.arn, None
        if role.create:
            role_node = node_id(ResourceKind.IAM_ROLE, role.name)
            return role_node, role_node
        raise SpecValidationError(
            f"{referrer} references IAM role '{reference}' which has neither "
            f"an 'arn' nor 'create: true'"
        )

    # -- expansion ------------------------------------------------------------

    def _add_network(self) -> None:
        network = self._spec.network
        if network is None or not network.managed:
            return
        self._graph.add_node(
            ResourceNode(
                id=NETWORK_NODE_ID,
                kind=ResourceKind.NETWORK,
                attributes={
                    "name": network.name,
                    "region": self._spec.cluster.region,
                    "address_space": network.address_space,
                    "subnets": [{"name": s.name, "cidr": s.cidr} for s in network.subnets],
                    "tags": self._spec.merged_tags(),
                },
            )
        )

    def _add_roles(self) -> None:
        for role in self._spec.iam:
            if not role.create:
                continue
            self._graph.add_node(
                ResourceNode(
                    id=node_id(ResourceKind.IAM_ROLE, role.name),
                    kind=ResourceKind.IAM_ROLE,
                    attributes={
                        "name": f"{self._spec.cluster.name}-{role.name}",
                        "purpose": role.purpose.value,
                        "policies": sorted(role.policies),
                        "region": self._spec.cluster.region,
                        "tags": self._spec.merged_tags(),
                    },
                )
            )

    def _add_cluster(self) -> None:
        spec = self._spec
        cluster = spec.cluster
        depends_on: list[str] = []

        role_value, role_dep = self._resolve_role(cluster.role, "Cluster")
        if role_dep:
            depends_on.append(role_dep)

        network = spec.network
        network_ref: str | None = None
        subnet_ids: list[str] = []
        if network is not None:
            if network.managed:
                network_ref = NETWORK_NODE_ID
                depends_on.append(NETWORK_NODE_ID)
            else:
                network_ref = network.id
                subnet_ids = list(network.subnet_ids)

        self._graph.add_node(
            ResourceNode(
                id=CLUSTER_NODE_ID,
                kind=ResourceKind.CLUSTER,
                attributes={
                    "name": cluster.name,
                    "region": cluster.region,
                    "kubernetes_version": cluster.kubernetes_version,
                    "role": role_value,
                    "network": network_ref,
                    "subnet_ids": subnet_ids,
                    "pod_cidr": network.pod_cidr if network else None,
                    "service_cidr": network.service_cidr if network else None,
                    "endpoint_public_access": cluster.endpoint_public_access,
                    "endpoint_private_access": cluster.endpoint_private_access,
                    "workload_identity": any(r.service_account for r in spec.iam),
                    "tags": spec.merged_tags(cluster.tags),
                },
                depends_on=sorted(set(depends_on)),
            )
        )

    def _add_bindings(self) -> None:
        for role in self._spec.iam:
            if not role.service_account:
                continue
            namespace, name = role.service_account.split("/", 1)
            binding_id = node_id(ResourceKind.IAM_BINDING, role.name)
            role_node = node_id(ResourceKind.IAM_ROLE, role.name)
            self._graph.add_node(
                ResourceNode(
                    id=binding_id,
                    kind=ResourceKind.IAM_BINDING,
                    attributes={
                        "name": f"{self._spec.cluster.name}-{role.name}",
                        "role": role_node,
                        "cluster": CLUSTER_NODE_ID,
                        "namespace": namespace,
                        "service_account": name,
                    },
                    depends_on=sorted([CLUSTER_NODE_ID, role_node]),
                )
            )
            self._bindings[role.name] = binding_id

    def _add_node_pools(self) -> list[str]:
        spec = self._spec
        pool_ids: list[str] = []
        for pool in spec.node_pools:
            pool_id = node_id(ResourceKind.NODE_POOL, pool.name)
            depends_on = [CLUSTER_NODE_ID]
            role_value, role_dep = self._resolve_role(pool.role, f"Node pool '{pool.name}'")
            if role_dep:
                depends_on.append(role_dep)

            self._graph.add_node(
                ResourceNode(
                    id=pool_id,
                    kind=ResourceKind.NODE_POOL,
                    attributes={
                        "name": pool.name,
                        "cluster": CLUSTER_NODE_ID,
                        "instance_type": pool.instance_type,
                        "min_count": pool.min_count,
                        "max_count": pool.max_count,
                        "desired_count": pool.effective_desired_count,
                        "enable_autoscaling": pool.enable_autoscaling,
                        "labels": dict(pool.labels),
                        "taints": [
                            {"key": t.key, "value": t.value, "effect": t.effect.value}
                            for t in pool.taints
                        ],
                        "disk_size_gb": pool.disk_size_gb,
                        "role": role_value,
                        "tags": spec.merged_tags(),
                    },
                    depends_on=sorted(set(depends_on)),
                )
            )
            pool_ids.append(pool_id)
        return pool_ids

    def _add_addons(self, pool_ids: list[str]) -> None:
        chained = self._spec.cloud in CLUSTER_PROFILE_ADDON_CLOUDS
        previous: str | None = None
        for name, addon in self._spec.enabled_addons.items():
            depends_on = [CLUSTER_NODE_ID, *pool_ids]
            if chained and previous:
                depends_on.append(previous)
            role_value, role_dep = self._resolve_role(addon.role, f"Add-on '{name.value}'")
            if role_dep:
                depends_on.append(role_dep)
                binding = self._bindings.get(addon.role or "")
                if binding:
                    depends_on.append(binding)

            self._graph.add_node(
                ResourceNode(
                    id=node_id(ResourceKind.ADDON, name.value),
                    kind=ResourceKind.ADDON,
                    attributes={
                        "name": name.value,
                        "cluster": CLUSTER_NODE_ID,
                        "version": addon.version,
                        "role": role_value,
                    },
                    depends_on=sorted(set(depends_on)),
                )
            )
            previous = node_id(ResourceKind.ADDON, name.value)

    def _add_storage(self) -> None:
        for bucket in self._spec.storage:
            self._graph.add_node(
                ResourceNode(
                    id=node_id(ResourceKind.STORAGE, bucket.name),
                    kind=ResourceKind.STORAGE,
                    attributes={
                        "name": bucket.name,
                        "region": self._spec.cluster.region,
                        "storage_class": bucket.storage_class,
                        "versioning": bucket.versioning,
                        "tags": self._spec.merged_tags(),
                    },
                )
            )


# =============================================================================
# CIDR checks
# =============================================================================


def check_network_cidrs(network: NetworkConfig) -> None:
    """Reject overlapping or misplaced CIDR blocks.

    Rules:
    - Subnets must sit inside the address space and must not overlap each other
    - Pod and service CIDRs must not overlap the address space, any subnet,
      or each other

    Raises:
        SpecValidationError: On the first violation found.
    """
    space = ipaddress.ip_network(network.address_space) if network.address_space else None
    subnets = [(f"subnet '{s.name}'", ipaddress.ip_network(s.cidr)) for s in network.subnets]

    if space is not None:
        for label, subnet in subnets:
            if subnet.version != space.version or not subnet.subnet_of(space):  # type: ignore[arg-type]
                raise SpecValidationError(
                    f"Network CIDR error: {label} {subnet} is outside address space {space}"
                )

    _check_pairwise(subnets)

    overlay: list[tuple[str, ipaddress.IPv4Network | ipaddress.IPv6Network]] = []
    if network.pod_cidr:
        overlay.append(("podCidr", ipaddress.ip_network(network.pod_cidr)))
    if network.service_cidr:
        overlay.append(("serviceCidr", ipaddress.ip_network(network.service_cidr)))

    host_ranges = list(subnets)
    if space is not None:
        host_ranges.append(("addressSpace", space))

    _check_pairwise(overlay)
    for label, block in overlay:
        for other_label, other in host_ranges:
            if block.overlaps(other):  # type: ignore[arg-type]
                raise SpecValidationError(
                    f"Network CIDR error: {label} {block} overlaps {other_label} {other}"
                )


def _check_pairwise(
    blocks: Iterable[tuple[str, ipaddress.IPv4Network | ipaddress.IPv6Network]],
) -> None:
    items = list(blocks)
    for i, (label, block) in enumerate(items):
        for other_label, other in items[i + 1:]:
            if block.overlaps(other):  # type: ignore[arg-type]
                raise SpecValidationError(
                    f"Network CIDR error: {label} {block} overlaps {other_label} {other}"
                )
