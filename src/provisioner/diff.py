"""Diff engine: desired resource graph vs. recorded state.

Per node:
- absent from the store                 -> Create
- attributes differ after normalization -> Update (one op, all changed fields)
- in the store but not in the graph     -> Delete
- otherwise                             -> NoOp

Fields the provider populates (FQDNs, endpoints, generated ids) are not
under caller control and are excluded from equality through per-kind
computed-field rules. Operators add their own rules from YAML, the same
way drift is tolerated for externally managed tags.

NORMALIZATION:
- Empty equivalence: None, [], {} and a missing key are the same value
- Unordered collections: taints, subnets, policies and subnet ids
  compare as sets
"""

from __future__ import annotations

import fnmatch
import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import yaml

from .resource_graph import NodeState, ResourceGraph, ResourceKind
from .state_store import ObservedState, StateStore, StateStoreError

logger = logging.getLogger(__name__)


class IgnoreRulesError(Exception):
    """Raised when ignore rules configuration is invalid."""

    pass


class ChangeKind(str, Enum):
    """Operation a ChangeOp asks the scheduler to perform."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_OP = "no-op"


@dataclass(frozen=True)
class ChangeOp:
    """One required mutation (or no-op) for a resource node.

    Attributes:
        node_id: Target node id.
        kind: Create, Update, Delete or NoOp.
        resource_kind: Kind of the target node.
        before: Recorded attributes (None for Create).
        after: Desired attributes (None for Delete).
        changed_fields: Top-level attribute names that differ (Update only).
        depends_on: Graph dependencies for Create/Update/NoOp; the recorded
            dependencies for Delete.
    """

    node_id: str
    kind: ChangeKind
    resource_kind: ResourceKind
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    changed_fields: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = ()

    @property
    def is_mutation(self) -> bool:
        return self.kind != ChangeKind.NO_OP

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "kind": self.kind.value,
            "resourceKind": self.resource_kind.value,
            "changedFields": list(self.changed_fields),
            "before": self.before,
            "after": self.after,
        }


# =============================================================================
# Ignore rules
# =============================================================================


@dataclass(frozen=True)
class IgnoreRule:
    """Attribute paths excluded from equality for matching resource kinds.

    Attributes:
        resource_kind: Kind value to match ("node-pool"); "*" matches all.
        paths: Dotted attribute paths. "*" matches one segment (list
            indices are segments), "**" matches any number of segments.
        reason: Human-readable explanation for audit logging.
    """

    resource_kind: str
    paths: tuple[str, ...]
    reason: str = ""

    def matches_resource(self, resource_kind: str) -> bool:
        if self.resource_kind == "*":
            return True
        return fnmatch.fnmatch(resource_kind, self.resource_kind)

    def should_ignore_path(self, path: str) -> bool:
        parts = path.split(".")
        return any(self._match_parts(parts, pattern.split(".")) for pattern in self.paths)

    def _match_parts(self, path_parts: list[str], pattern_parts: list[str]) -> bool:
        if not pattern_parts:
            return not path_parts
        if not path_parts:
            return all(p == "**" for p in pattern_parts)

        if pattern_parts[0] == "**":
            if len(pattern_parts) == 1:
                return True
            return any(
                self._match_parts(path_parts[i:], pattern_parts[1:])
                for i in range(len(path_parts) + 1)
            )
        if pattern_parts[0] == "*" or fnmatch.fnmatch(path_parts[0], pattern_parts[0]):
            return self._match_parts(path_parts[1:], pattern_parts[1:])
        return False


# Provider-populated attributes per resource kind
COMPUTED_FIELDS: dict[ResourceKind, tuple[str, ...]] = {
    ResourceKind.NETWORK: ("id", "subnets.*.id", "status"),
    ResourceKind.IAM_ROLE: ("arn", "id", "principal_id", "client_id", "unique_id"),
    ResourceKind.IAM_BINDING: ("id", "subject", "issuer"),
    ResourceKind.CLUSTER: (
        "id",
        "arn",
        "endpoint",
        "fqdn",
        "private_fqdn",
        "oidc_issuer",
        "certificate_authority",
        "status",
        "identity.*",
        "platform_version",
    ),
    ResourceKind.NODE_POOL: ("id", "status", "current_count", "node_image_version"),
    ResourceKind.ADDON: ("id", "status", "resolved_version"),
    ResourceKind.STORAGE: ("id", "endpoint", "status", "creation_time"),
}

DEFAULT_IGNORE_RULES: tuple[IgnoreRule, ...] = tuple(
    IgnoreRule(
        resource_kind=kind.value,
        paths=paths,
        reason="Populated by the provider, not under caller control",
    )
    for kind, paths in COMPUTED_FIELDS.items()
)


@dataclass
class IgnoreRulesConfig:
    """Ignore rules in effect for a diff.

    Attributes:
        rules: User-supplied rules.
        enable_default_rules: Include the computed-field rules.
        log_ignored_changes: Log suppressed differences at debug level.
    """

    rules: list[IgnoreRule] = field(default_factory=list)
    enable_default_rules: bool = True
    log_ignored_changes: bool = True

    def get_effective_rules(self) -> list[IgnoreRule]:
        if self.enable_default_rules:
            return list(DEFAULT_IGNORE_RULES) + list(self.rules)
        return list(self.rules)

    @classmethod
    def from_yaml(cls, yaml_content: str) -> IgnoreRulesConfig:
        """Parse ignore rules from YAML content.

        Expected format::

            enableDefaultRules: true
            rules:
              - resourceKind: node-pool
                paths: ["desired_count"]
                reason: "Cluster autoscaler owns the node count"

        Raises:
            IgnoreRulesError: If YAML is invalid or malformed.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise IgnoreRulesError(f"Invalid YAML in ignore rules: {e}") from e

        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise IgnoreRulesError("Ignore rules must be a YAML object")

        raw_rules = data.get("rules", [])
        if not isinstance(raw_rules, list):
            raise IgnoreRulesError("'rules' must be a list")

        rules: list[IgnoreRule] = []
        for i, rule_data in enumerate(raw_rules):
            if not isinstance(rule_data, dict):
                raise IgnoreRulesError(f"Rule {i} must be an object")
            paths = rule_data.get("paths", [])
            if not isinstance(paths, list) or not paths:
                raise IgnoreRulesError(f"Rule {i}: 'paths' must be a non-empty list")
            if not all(isinstance(p, str) for p in paths):
                raise IgnoreRulesError(f"Rule {i}: paths must be strings")
            rules.append(
                IgnoreRule(
                    resource_kind=str(rule_data.get("resourceKind", "*")),
                    paths=tuple(paths),
                    reason=str(rule_data.get("reason", "")),
                )
            )

        return cls(
            rules=rules,
            enable_default_rules=bool(data.get("enableDefaultRules", True)),
            log_ignored_changes=bool(data.get("logIgnoredChanges", True)),
        )

    @classmethod
    def from_file(cls, path: str | os.PathLike[str]) -> IgnoreRulesConfig:
        try:
            with open(path, encoding="utf-8") as f:
                content = f.read()
        except OSError as e:
            raise IgnoreRulesError(f"Cannot read ignore rules file: {e}") from e
        return cls.from_yaml(content)

    @classmethod
    def from_env(cls) -> IgnoreRulesConfig:
        """Load ignore rules named by IGNORE_RULES_FILE, or the defaults.

        Raises:
            IgnoreRulesError: If the named file cannot be loaded.
        """
        rules_file = os.environ.get("IGNORE_RULES_FILE")
        if not rules_file:
            return cls()
        return cls.from_file(rules_file)


# =============================================================================
# Normalization
# =============================================================================

UNORDERED_LIST_FIELDS = frozenset({"taints", "subnets", "policies", "subnet_ids"})


def is_empty(value: Any) -> bool:
    """None, empty list and empty mapping are equivalent to a missing key."""
    return value is None or value == [] or value == {}


def normalize(value: Any, unordered: bool = False) -> Any:
    """Canonical form used for equality.

    Empty children are dropped from mappings; lists flagged as unordered
    are sorted by their canonical JSON text.
    """
    if isinstance(value, Mapping):
        result = {}
        for key, child in value.items():
            normalized = normalize(child, unordered=key in UNORDERED_LIST_FIELDS)
            if not is_empty(normalized):
                result[str(key)] = normalized
        return result
    if isinstance(value, (list, tuple)):
        items = [normalize(item) for item in value]
        if unordered:
            items.sort(key=lambda item: json.dumps(item, sort_keys=True, default=str))
        return items
    return value


class DiffEngine:
    """Computes the changeset that moves recorded state to the desired graph."""

    def __init__(self, ignore_rules: IgnoreRulesConfig | None = None) -> None:
        self._config = ignore_rules or IgnoreRulesConfig()
        self._rules = self._config.get_effective_rules()

    def diff(self, graph: ResourceGraph, store: StateStore) -> list[ChangeOp]:
        """Classify every desired and every recorded node.

        Graph nodes are moved to the Diffed state. Output lists graph
        nodes in dependency order, followed by deletes.
        """
        observed = store.snapshot()
        changes: list[ChangeOp] = []

        for node_id in graph.topological_sort():
            node = graph.nodes[node_id]
            current = observed.get(node_id)
            depends_on = tuple(node.depends_on)

            if current is None:
                changes.append(
                    ChangeOp(
                        node_id=node_id,
                        kind=ChangeKind.CREATE,
                        resource_kind=node.kind,
                        after=node.attributes,
                        depends_on=depends_on,
                    )
                )
            else:
                changed = self.changed_fields(node.kind, current.attributes, node.attributes)
                changes.append(
                    ChangeOp(
                        node_id=node_id,
                        kind=ChangeKind.UPDATE if changed else ChangeKind.NO_OP,
                        resource_kind=node.kind,
                        before=current.attributes,
                        after=node.attributes,
                        changed_fields=changed,
                        depends_on=depends_on,
                    )
                )
            node.state = NodeState.DIFFED

        for node_id in sorted(set(observed) - set(graph.nodes)):
            changes.append(self._delete_op(observed[node_id]))

        logger.info("Computed changeset", extra={"summary": summarize(changes)})
        return changes

    def _delete_op(self, state: ObservedState) -> ChangeOp:
        try:
            resource_kind = ResourceKind(state.kind)
        except ValueError as e:
            raise StateStoreError(
                f"Recorded node '{state.node_id}' has unknown kind '{state.kind}'"
            ) from e
        return ChangeOp(
            node_id=state.node_id,
            kind=ChangeKind.DELETE,
            resource_kind=resource_kind,
            before=state.attributes,
            depends_on=tuple(state.depends_on),
        )

    def changed_fields(
        self,
        resource_kind: ResourceKind,
        before: Mapping[str, Any],
        after: Mapping[str, Any],
    ) -> tuple[str, ...]:
        """Top-level attribute names whose values differ, sorted."""
        rules = [r for r in self._rules if r.matches_resource(resource_kind.value)]
        left = normalize(self._prune(before, "", rules, resource_kind))
        right = normalize(self._prune(after, "", rules, resource_kind))
        return tuple(
            sorted(key for key in set(left) | set(right) if left.get(key) != right.get(key))
        )

    def _prune(
        self,
        value: Any,
        path: str,
        rules: list[IgnoreRule],
        resource_kind: ResourceKind,
    ) -> Any:
        if isinstance(value, Mapping):
            result = {}
            for key, child in value.items():
                child_path = f"{path}.{key}" if path else str(key)
                rule = self._matching_rule(child_path, rules)
                if rule is not None:
                    if self._config.log_ignored_changes:
                        logger.debug(
                            "Ignoring attribute per rule",
                            extra={
                                "resource_kind": resource_kind.value,
                                "path": child_path,
                                "reason": rule.reason,
                            },
                        )
                    continue
                result[key] = self._prune(child, child_path, rules, resource_kind)
            return result
        if isinstance(value, (list, tuple)):
            return [
                self._prune(item, f"{path}.{i}", rules, resource_kind)
                for i, item in enumerate(value)
            ]
        return value

    @staticmethod
    def _matching_rule(path: str, rules: list[IgnoreRule]) -> IgnoreRule | None:
        for rule in rules:
            if rule.should_ignore_path(path):
                return rule
        return None


def summarize(changes: list[ChangeOp]) -> dict[str, int]:
    """Count of ops per change kind."""
    counts = {kind.value: 0 for kind in ChangeKind}
    for change in changes:
        counts[change.kind.value] += 1
    return counts
