"""Reconciliation controller.

One pass:
1. Build the resource graph from the spec (pure, fails fast on bad input)
2. Diff it against the state store
3. Apply the changeset through the provider adapter
4. Project outputs from the updated store

Validation errors abort the pass before any provider call or state
mutation. Per-node provider errors are contained to that node and its
dependents; the result always lists exactly which nodes applied, failed
or were blocked.

The reconciler can run a single pass (CLI) or a loop on an interval
with a circuit breaker (operator mode).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from .config import Config, ConfigurationError
from .diff import ChangeOp, DiffEngine, IgnoreRulesConfig, summarize
from .models import ClusterSpec, SpecValidationError
from .providers import ProviderAdapter, get_adapter
from .resource_graph import NodeState, ResourceGraph, ResourceKind, build_graph
from .scheduler import ApplyScheduler, TransitionCallback
from .spec_loader import load_spec
from .state_store import FileStateStore, ObservedState, StateStore, StateStoreError

logger = logging.getLogger(__name__)

# Circuit breaker constants
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300  # 5 minutes


class ChangeLimitExceeded(Exception):
    """Raised when a pass plans more changes than allowed."""

    pass


@dataclass
class Plan:
    """Graph and changeset for one spec, without side effects."""

    graph: ResourceGraph
    changes: list[ChangeOp]

    @property
    def mutations(self) -> list[ChangeOp]:
        return [c for c in self.changes if c.is_mutation]

    @property
    def summary(self) -> dict[str, int]:
        return summarize(self.changes)


@dataclass
class ReconciliationResult:
    """Result of a single reconciliation pass."""

    cluster: str
    cloud: str
    dry_run: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    changes: list[ChangeOp] = field(default_factory=list)
    applied: list[str] = field(default_factory=list)
    no_op: list[str] = field(default_factory=list)
    failed: dict[str, Exception] = field(default_factory=dict)
    # Blocked node id -> failed upstream node id, or "cancelled"
    blocked: dict[str, str] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """True if the pass ran and every op applied."""
        return self.error is None and not self.failed and not self.blocked

    def to_dict(self) -> dict[str, Any]:
        return {
            "cluster": self.cluster,
            "cloud": self.cloud,
            "dryRun": self.dry_run,
            "success": self.success,
            "summary": summarize(self.changes),
            "changes": [c.to_dict() for c in self.changes if c.is_mutation],
            "applied": self.applied,
            "noOp": self.no_op,
            "failed": {
                node_id: {"type": type(e).__name__, "message": str(e)}
                for node_id, e in self.failed.items()
            },
            "blocked": self.blocked,
            "cancelled": self.cancelled,
            "outputs": self.outputs,
            "error": str(self.error) if self.error is not None else None,
            "durationSeconds": round(self.duration_seconds, 3),
        }


def project_outputs(snapshot: dict[str, ObservedState]) -> dict[str, Any]:
    """Shape recorded state into cluster, node pool and network outputs."""
    outputs: dict[str, Any] = {
        "cluster": None,
        "network": None,
        "node_pools": {},
        "iam_roles": {},
        "addons": {},
        "storage": {},
    }
    sections = {
        ResourceKind.NODE_POOL.value: "node_pools",
        ResourceKind.IAM_ROLE.value: "iam_roles",
        ResourceKind.ADDON.value: "addons",
        ResourceKind.STORAGE.value: "storage",
    }
    for node_id, state in sorted(snapshot.items()):
        entry = {"id": state.identity, **state.outputs}
        if state.kind == ResourceKind.CLUSTER.value:
            outputs["cluster"] = {"name": state.attributes.get("name"), **entry}
        elif state.kind == ResourceKind.NETWORK.value:
            outputs["network"] = entry
        elif state.kind in sections:
            name = node_id.split(":", 1)[-1]
            outputs[sections[state.kind]][name] = entry
    return outputs


class Reconciler:
    """Drives Build -> Diff -> Apply -> Store for a ClusterSpec.

    Circuit breaker: after MAX_CONSECUTIVE_FAILURES failed passes the loop
    pauses for CIRCUIT_BREAKER_RESET_SECONDS.
    """

    def __init__(
        self,
        config: Config,
        adapter: ProviderAdapter | None = None,
        store: StateStore | None = None,
        ignore_rules: IgnoreRulesConfig | None = None,
        adapter_factory: Callable[[ClusterSpec, Config], ProviderAdapter] = get_adapter,
        on_transition: TransitionCallback | None = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            config: Validated configuration.
            adapter: Provider adapter; built from the spec's cloud when omitted.
            store: State store; a FileStateStore under config.state_dir when omitted.
            ignore_rules: Diff ignore rules; loaded from config.ignore_rules_file
                when omitted.
            adapter_factory: Builds an adapter for a spec when none is given.
            on_transition: Observer for node lifecycle transitions.

        Raises:
            IgnoreRulesError: If the configured ignore rules file is invalid.
            StateStoreError: If the state directory cannot be created.
        """
        self._config = config
        self._adapter = adapter
        self._adapter_factory = adapter_factory
        self._store = store if store is not None else FileStateStore(config.state_dir)
        if ignore_rules is None:
            ignore_rules = (
                IgnoreRulesConfig.from_file(config.ignore_rules_file)
                if config.ignore_rules_file is not None
                else IgnoreRulesConfig()
            )
        self._diff = DiffEngine(ignore_rules)
        self._on_transition = on_transition

        self._cancel_event = asyncio.Event()
        self._shutdown_event = asyncio.Event()

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def config(self) -> Config:
        return self._config

    @property
    def store(self) -> StateStore:
        return self._store

    def plan(self, spec: ClusterSpec) -> Plan:
        """Build and diff without applying.

        Raises:
            SpecValidationError: If the spec cannot be expanded into a valid graph.
            StateStoreError: If recorded state cannot be read.
        """
        graph = build_graph(spec)
        changes = self._diff.diff(graph, self._store)
        return Plan(graph=graph, changes=changes)

    def outputs(self) -> dict[str, Any]:
        """Outputs projected from the current store contents."""
        return project_outputs(self._store.snapshot())

    def cancel(self) -> None:
        """Stop starting new operations in the running pass, or in the next one."""
        logger.info("Cancellation requested")
        self._cancel_event.set()

    async def reconcile(self, spec: ClusterSpec) -> ReconciliationResult:
        """Run one reconciliation pass.

        Never raises for pass-level problems; they are reported on
        ``result.error``.
        """
        result = ReconciliationResult(
            cluster=spec.cluster.name,
            cloud=spec.cloud.value,
            dry_run=self._config.dry_run,
        )
        started = time.monotonic()

        try:
            plan = self.plan(spec)
            result.changes = plan.changes
            mutations = plan.mutations

            if len(mutations) > self._config.max_changes_per_pass:
                raise ChangeLimitExceeded(
                    f"Pass plans {len(mutations)} changes, limit is "
                    f"{self._config.max_changes_per_pass}"
                )

            if self._config.dry_run:
                logger.info("Dry run, skipping apply", extra={"summary": plan.summary})
            elif not mutations:
                result.no_op = [c.node_id for c in plan.changes]
                for node in plan.graph.nodes.values():
                    node.state = NodeState.APPLIED
            else:
                await self._apply(spec, plan, result)

            result.outputs = self.outputs()
        except SpecValidationError as e:
            logger.error("Spec validation failed", extra={"error": str(e)})
            result.error = e
        except ChangeLimitExceeded as e:
            logger.error("Change limit exceeded, nothing applied", extra={"error": str(e)})
            result.error = e
        except ConfigurationError as e:
            logger.error("Provider configuration error", extra={"error": str(e)})
            result.error = e
        except StateStoreError as e:
            logger.error("State store error", extra={"error": str(e)})
            result.error = e
        except Exception as e:
            logger.exception("Unexpected error during reconciliation")
            result.error = e
        finally:
            # A cancel requested before or during this pass is consumed by it
            self._cancel_event.clear()

        result.end_time = result.start_time + timedelta(seconds=time.monotonic() - started)
        self._log_result(result)
        return result

    async def _apply(self, spec: ClusterSpec, plan: Plan, result: ReconciliationResult) -> None:
        if self._adapter is None:
            self._adapter = self._adapter_factory(spec, self._config)

        scheduler = ApplyScheduler(
            adapter=self._adapter,
            store=self._store,
            retry=self._config.retry,
            max_workers=self._config.max_workers,
            on_transition=self._on_transition,
        )
        report = await scheduler.apply(plan.changes, plan.graph, self._cancel_event)

        result.applied = report.applied
        result.no_op = report.no_op
        result.failed = report.failed
        result.blocked = {node_id: b.upstream for node_id, b in report.blocked.items()}
        result.cancelled = report.cancelled

    async def run(self, spec_path: Path) -> None:
        """Reconcile the spec file at an interval until shutdown.

        The spec is reloaded every cycle so edits are picked up without
        a restart.
        """
        logger.info(
            "Starting reconciler",
            extra={
                "spec_path": str(spec_path),
                "interval_seconds": self._config.reconcile_interval_seconds,
                "dry_run": self._config.dry_run,
            },
        )

        while not self._shutdown_event.is_set():
            if self._circuit_open_until is not None:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping reconciliation",
                        extra={
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    await self._wait_for_shutdown(
                        min(remaining, self._config.reconcile_interval_seconds)
                    )
                    continue
                logger.info("Circuit breaker reset, resuming reconciliation")
                self._circuit_open_until = None
                self._consecutive_failures = 0

            try:
                spec = load_spec(spec_path)
            except SpecValidationError as e:
                logger.error("Cannot load spec", extra={"error": str(e)})
                self._record_pass(success=False)
            else:
                result = await self.reconcile(spec)
                self._record_pass(success=result.success)

            await self._wait_for_shutdown(self._config.reconcile_interval_seconds)

        logger.info("Reconciler shutdown complete")

    def _record_pass(self, success: bool) -> None:
        if success:
            self._consecutive_failures = 0
            return
        self._consecutive_failures += 1
        if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
            self._circuit_open_until = datetime.now(UTC) + timedelta(
                seconds=CIRCUIT_BREAKER_RESET_SECONDS
            )
            logger.error(
                "Circuit breaker opened after consecutive failures",
                extra={
                    "consecutive_failures": self._consecutive_failures,
                    "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                },
            )

    async def _wait_for_shutdown(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except TimeoutError:
            # Normal timeout, continue to next cycle
            pass

    @property
    def circuit_open(self) -> bool:
        return self._circuit_open_until is not None

    def shutdown(self) -> None:
        """Signal the loop to stop and cancel the running pass."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()
        self._cancel_event.set()

    def _log_result(self, result: ReconciliationResult) -> None:
        extra: dict[str, Any] = {
            "cluster": result.cluster,
            "cloud": result.cloud,
            "dry_run": result.dry_run,
            "duration_seconds": result.duration_seconds,
            "summary": summarize(result.changes),
            "applied": len(result.applied),
            "failed": sorted(result.failed),
            "blocked": sorted(result.blocked),
            "cancelled": result.cancelled,
        }
        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Reconciliation failed", extra=extra)
        elif result.failed or result.blocked:
            logger.warning("Reconciliation partially applied", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
