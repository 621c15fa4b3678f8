"""Apply scheduler: executes a changeset in dependency order.

ORDERING:
- Create/Update/NoOp ops wait until every graph dependency is Applied
- Delete ops wait until every recorded dependent has been deleted, and
  until surviving nodes that still reference them have been updated
- Independent subtrees run concurrently, bounded by max_workers

FAILURE CONTAINMENT:
- A failed op blocks its transitive dependents; they are never attempted
- Independent subtrees keep going; nothing already applied is rolled back
- Transient provider errors are retried with exponential backoff + jitter,
  permanent errors fail immediately

STATE: the store is written only after the provider confirms success,
one node at a time. A single coordinator task owns all lifecycle
transitions; provider calls and store I/O run in executor threads.

CANCELLATION: cooperative. The cancel event is checked before an op
starts. In-flight provider calls run to completion; ops not yet started
are reported Blocked with reason "cancelled".
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any

from .config import DEFAULT_MAX_WORKERS, RetryPolicy
from .diff import ChangeKind, ChangeOp
from .providers.base import (
    ProviderAdapter,
    ProviderError,
    ProviderResult,
    ResourceNotFoundError,
    ResourceRequest,
    TransientProviderError,
)
from .resource_graph import NodeState, ResourceGraph
from .state_store import ObservedState, StateStore, StateStoreError

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"
JITTER_FRACTION = 0.2


class DependencyBlocked(Exception):
    """An op was skipped because an upstream op failed or the pass was cancelled.

    Attributes:
        node_id: The skipped node.
        upstream: Id of the failed node at the root of the chain, or "cancelled".
    """

    def __init__(self, node_id: str, upstream: str) -> None:
        self.node_id = node_id
        self.upstream = upstream
        if upstream == CANCELLED:
            message = f"'{node_id}' not started: pass cancelled"
        else:
            message = f"'{node_id}' blocked by failure of '{upstream}'"
        super().__init__(message)


@dataclass
class ApplyReport:
    """Outcome of applying one changeset."""

    applied: list[str] = field(default_factory=list)
    no_op: list[str] = field(default_factory=list)
    failed: dict[str, Exception] = field(default_factory=dict)
    blocked: dict[str, DependencyBlocked] = field(default_factory=dict)
    states: dict[str, NodeState] = field(default_factory=dict)
    # Order in which nodes entered Applying
    started: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.failed and not self.blocked


TransitionCallback = Callable[[str, NodeState], None]


class ApplyScheduler:
    """Runs ChangeOps against a provider adapter and records results."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        store: StateStore,
        retry: RetryPolicy | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        on_transition: TransitionCallback | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._adapter = adapter
        self._store = store
        self._retry = retry or RetryPolicy()
        self._max_workers = max_workers
        self._on_transition = on_transition
        self._sleep = sleep

    async def apply(
        self,
        changes: list[ChangeOp],
        graph: ResourceGraph | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ApplyReport:
        """Execute a changeset.

        Args:
            changes: Ops from the diff engine, in any order.
            graph: When given, node lifecycle states are mirrored onto it.
            cancel_event: Set to stop starting new ops.

        Returns:
            Which nodes applied, failed or were blocked.

        Raises:
            StateStoreError: If recorded dependencies cannot be read.
        """
        report = ApplyReport()
        ops = {op.node_id: op for op in changes}
        recorded: dict[str, tuple[str, ...]] = {}
        if any(op.kind == ChangeKind.DELETE for op in ops.values()):
            loop = asyncio.get_running_loop()
            recorded = await loop.run_in_executor(None, self._recorded_dependencies, ops)
        prerequisites = self._prerequisites(ops, recorded)
        cancel_event = cancel_event or asyncio.Event()

        def transition(node_id: str, state: NodeState) -> None:
            report.states[node_id] = state
            if graph is not None and node_id in graph.nodes:
                graph.nodes[node_id].state = state
            if self._on_transition is not None:
                self._on_transition(node_id, state)

        def block(node_id: str, upstream: str) -> None:
            report.blocked[node_id] = DependencyBlocked(node_id, upstream)
            transition(node_id, NodeState.BLOCKED)
            logger.warning(
                "Operation blocked",
                extra={"node_id": node_id, "upstream": upstream},
            )

        def root_cause(node_id: str) -> str:
            if node_id in report.blocked:
                return report.blocked[node_id].upstream
            return node_id

        pending = dict(ops)
        running: dict[asyncio.Task[Exception | None], str] = {}

        while pending or running:
            progressed = True
            while progressed:
                progressed = False
                for node_id in list(pending):
                    op = pending[node_id]
                    prereqs = prerequisites[node_id]

                    bad = next(
                        (
                            p
                            for p in prereqs
                            if report.states.get(p) in (NodeState.FAILED, NodeState.BLOCKED)
                        ),
                        None,
                    )
                    if bad is not None:
                        del pending[node_id]
                        block(node_id, root_cause(bad))
                        progressed = True
                        continue

                    if not all(report.states.get(p) == NodeState.APPLIED for p in prereqs):
                        continue

                    if op.kind == ChangeKind.NO_OP:
                        del pending[node_id]
                        report.no_op.append(node_id)
                        transition(node_id, NodeState.APPLIED)
                        progressed = True
                        continue

                    if cancel_event.is_set():
                        del pending[node_id]
                        report.cancelled = True
                        block(node_id, CANCELLED)
                        progressed = True
                        continue

                    if len(running) >= self._max_workers:
                        continue

                    del pending[node_id]
                    report.started.append(node_id)
                    transition(node_id, NodeState.APPLYING)
                    task = asyncio.create_task(self._execute(op), name=f"apply:{node_id}")
                    running[task] = node_id

            if not running:
                # Remaining ops wait on something that will never resolve
                for node_id in list(pending):
                    del pending[node_id]
                    block(node_id, "unresolved dependencies")
                break

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                node_id = running.pop(task)
                try:
                    error = task.result()
                except Exception as e:
                    logger.exception("Unexpected error applying node", extra={"node_id": node_id})
                    error = e

                if error is None:
                    report.applied.append(node_id)
                    transition(node_id, NodeState.APPLIED)
                else:
                    report.failed[node_id] = error
                    transition(node_id, NodeState.FAILED)

        if cancel_event.is_set():
            report.cancelled = True
        return report

    def _recorded_dependencies(self, ops: dict[str, ChangeOp]) -> dict[str, tuple[str, ...]]:
        """Recorded depends_on of the nodes being updated."""
        recorded: dict[str, tuple[str, ...]] = {}
        for node_id, op in ops.items():
            if op.kind != ChangeKind.UPDATE:
                continue
            state = self._store.get(node_id)
            if state is not None:
                recorded[node_id] = tuple(state.depends_on)
        return recorded

    @staticmethod
    def _prerequisites(
        ops: dict[str, ChangeOp],
        recorded: dict[str, tuple[str, ...]] | None = None,
    ) -> dict[str, list[str]]:
        """Ids each op must wait for.

        A delete waits for every op on a node that still references it:
        deletes of its recorded dependents, and updates of surviving nodes
        whose recorded dependencies include it. Dependencies outside the
        changeset are treated as satisfied.
        """
        recorded = recorded or {}
        prerequisites: dict[str, list[str]] = {node_id: [] for node_id in ops}
        for op in ops.values():
            if op.kind == ChangeKind.DELETE:
                for dep in op.depends_on:
                    dep_op = ops.get(dep)
                    if dep_op is not None and dep_op.kind == ChangeKind.DELETE:
                        prerequisites[dep].append(op.node_id)
                continue
            prerequisites[op.node_id].extend(d for d in op.depends_on if d in ops)
            for dep in recorded.get(op.node_id, ()):
                dep_op = ops.get(dep)
                if dep_op is not None and dep_op.kind == ChangeKind.DELETE:
                    prerequisites[dep].append(op.node_id)
        return {node_id: sorted(set(p)) for node_id, p in prerequisites.items()}

    # =========================================================================
    # Single op execution
    # =========================================================================

    async def _execute(self, op: ChangeOp) -> Exception | None:
        """Run one op to completion. Returns the error on failure, None on success."""
        loop = asyncio.get_running_loop()
        try:
            current, inputs = await loop.run_in_executor(None, self._load_context, op)
        except StateStoreError as e:
            logger.error("Cannot read state for operation", extra={"node_id": op.node_id, "error": str(e)})
            return e

        request = self._request(op, current, inputs)
        action = op.kind
        attempt = 1

        while True:
            try:
                result = await self._call_provider(action, request)
                break
            except TransientProviderError as e:
                if attempt >= self._retry.max_attempts:
                    logger.error(
                        "Operation failed after retries",
                        extra={"node_id": op.node_id, "attempts": attempt, "error": str(e)},
                    )
                    return e
                backoff = self._retry.backoff_for(attempt)
                jitter = random.uniform(0, backoff * JITTER_FRACTION)
                wait_time = backoff + jitter
                logger.warning(
                    "Transient provider error, retrying",
                    extra={
                        "node_id": op.node_id,
                        "attempt": attempt,
                        "max_attempts": self._retry.max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                await self._sleep(wait_time)
                attempt += 1
            except ResourceNotFoundError as e:
                if action == ChangeKind.DELETE:
                    logger.info("Resource already deleted", extra={"node_id": op.node_id})
                    result = ProviderResult(identity=request.identity)
                    break
                if action == ChangeKind.UPDATE:
                    logger.warning(
                        "Resource missing on update, recreating",
                        extra={"node_id": op.node_id},
                    )
                    action = ChangeKind.CREATE
                    request = replace(request, before=None, changed_fields=())
                    continue
                return e
            except ProviderError as e:
                logger.error(
                    "Operation failed",
                    extra={"node_id": op.node_id, "kind": op.kind.value, "error": str(e)},
                )
                return e

        try:
            await loop.run_in_executor(None, self._record, op, result)
        except StateStoreError as e:
            logger.error(
                "Provider call succeeded but state could not be recorded",
                extra={"node_id": op.node_id, "error": str(e)},
            )
            return e

        logger.info(
            "Operation applied",
            extra={"node_id": op.node_id, "kind": op.kind.value, "attempts": attempt},
        )
        return None

    def _load_context(self, op: ChangeOp) -> tuple[ObservedState | None, dict[str, ObservedState]]:
        current = self._store.get(op.node_id)
        inputs: dict[str, ObservedState] = {}
        for dep in op.depends_on:
            state = self._store.get(dep)
            if state is not None:
                inputs[dep] = state
        return current, inputs

    @staticmethod
    def _request(
        op: ChangeOp,
        current: ObservedState | None,
        inputs: dict[str, ObservedState],
    ) -> ResourceRequest:
        if op.kind == ChangeKind.DELETE:
            attributes = op.before or (current.attributes if current else {})
        else:
            attributes = op.after or {}
        return ResourceRequest(
            node_id=op.node_id,
            kind=op.resource_kind,
            attributes=attributes,
            identity=current.identity if current else None,
            before=op.before if op.kind == ChangeKind.UPDATE else None,
            changed_fields=op.changed_fields,
            inputs=inputs,
        )

    async def _call_provider(self, action: ChangeKind, request: ResourceRequest) -> ProviderResult:
        method = {
            ChangeKind.CREATE: self._adapter.create,
            ChangeKind.UPDATE: self._adapter.update,
            ChangeKind.DELETE: self._adapter.delete,
        }[action]
        # Adapters bound their own calls (pollers, waiters, operation deadlines);
        # a started call always runs to completion before the next attempt.
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, method, request)

    def _record(self, op: ChangeOp, result: ProviderResult) -> None:
        if op.kind == ChangeKind.DELETE:
            self._store.delete(op.node_id)
            return
        self._store.put(
            op.node_id,
            op.after or {},
            kind=op.resource_kind.value,
            identity=result.identity,
            outputs=result.outputs,
            depends_on=op.depends_on,
        )

