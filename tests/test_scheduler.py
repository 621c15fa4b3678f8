"""Tests for the apply scheduler."""

from __future__ import annotations

import asyncio

import pytest
from provider_mock import MockProvider, MockResource

from provisioner.config import RetryPolicy
from provisioner.diff import ChangeKind, ChangeOp, DiffEngine
from provisioner.models import ClusterSpec
from provisioner.providers.base import PermanentProviderError, TransientProviderError
from provisioner.resource_graph import NodeState, ResourceGraph, ResourceKind, build_graph
from provisioner.scheduler import CANCELLED, ApplyScheduler
from provisioner.state_store import MemoryStateStore, ObservedState, StateStoreError

INSTANT_RETRY = RetryPolicy(max_attempts=3, backoff_base_seconds=0.0, backoff_max_seconds=0.0)


class RecordingSleep:
    """Stands in for asyncio.sleep and records requested waits."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class TransitionLog:
    """Collects (node_id, state) transitions in order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, NodeState]] = []

    def __call__(self, node_id: str, state: NodeState) -> None:
        self.events.append((node_id, state))

    def index(self, node_id: str, state: NodeState) -> int:
        return self.events.index((node_id, state))


class FailingWriteStore(MemoryStateStore):
    """Memory store that cannot persist selected nodes."""

    def __init__(self, fail_on: set[str]) -> None:
        super().__init__()
        self.fail_on = fail_on

    def _write(self, state: ObservedState) -> None:
        if state.node_id in self.fail_on:
            raise StateStoreError(f"disk full writing {state.node_id}")
        super()._write(state)


def plan(spec_data: dict, store: MemoryStateStore) -> tuple[ResourceGraph, list[ChangeOp]]:
    graph = build_graph(ClusterSpec.parse(spec_data))
    return graph, DiffEngine().diff(graph, store)


def scheduler(provider: MockProvider, store: MemoryStateStore, **kwargs: object) -> ApplyScheduler:
    kwargs.setdefault("retry", INSTANT_RETRY)
    kwargs.setdefault("sleep", RecordingSleep())
    return ApplyScheduler(provider, store, **kwargs)  # type: ignore[arg-type]


def storage_ops(count: int) -> list[ChangeOp]:
    return [
        ChangeOp(
            node_id=f"storage:bucket-{i}",
            kind=ChangeKind.CREATE,
            resource_kind=ResourceKind.STORAGE,
            after={"name": f"bucket-{i}"},
        )
        for i in range(count)
    ]


class TestApplyOrdering:
    """Tests for dependency ordering."""

    @pytest.mark.asyncio
    async def test_applies_everything(
        self, full_spec: dict, provider: MockProvider, store: MemoryStateStore
    ) -> None:
        """A clean changeset applies every node and records it."""
        graph, changes = plan(full_spec, store)

        report = await scheduler(provider, store).apply(changes, graph)

        assert report.success
        assert sorted(report.applied) == sorted(graph.nodes)
        assert sorted(store.list_ids()) == sorted(graph.nodes)
        assert {n.state for n in graph.nodes.values()} == {NodeState.APPLIED}

    @pytest.mark.asyncio
    async def test_dependencies_applied_first(
        self, full_spec: dict, provider: MockProvider, store: MemoryStateStore
    ) -> None:
        """No node enters Applying before all its dependencies are Applied."""
        graph, changes = plan(full_spec, store)
        log = TransitionLog()

        await scheduler(provider, store, on_transition=log, max_workers=8).apply(changes, graph)

        for node in graph.nodes.values():
            started = log.index(node.id, NodeState.APPLYING)
            for dep in node.depends_on:
                assert log.index(dep, NodeState.APPLIED) < started

    @pytest.mark.asyncio
    async def test_records_provider_outputs(
        self, spec_data: dict, provider: MockProvider, store: MemoryStateStore
    ) -> None:
        """Identity and outputs reported by the provider are stored."""
        graph, changes = plan(spec_data, store)

        await scheduler(provider, store).apply(changes, graph)

        cluster = store.get("cluster")
        assert cluster is not None
        assert cluster.identity == "mock://aws/cluster/dev-eks"
        assert cluster.outputs["endpoint"] == "https://dev-eks.k8s.mock.example"
        assert cluster.attributes == graph.nodes["cluster"].attributes

    @pytest.mark.asyncio
    async def test_noops_make_no_calls(
        self, spec_data: dict, provider: MockProvider, store: MemoryStateStore
    ) -> None:
        """A second pass over unchanged state calls nothing."""
        graph, changes = plan(spec_data, store)
        await scheduler(provider, store).apply(changes, graph)
        provider.reset_calls()

        graph, changes = plan(spec_data, store)
        report = await scheduler(provider, store).apply(changes, graph)

        assert provider.calls == []
        assert sorted(report.no_op) == ["cluster", "node-pool:default"]
        assert report.applied == []

    @pytest.mark.asyncio
    async def test_deletes_dependents_first(
        self, spec_data: dict, provider: MockProvider, store: MemoryStateStore
    ) -> None:
        """A node is deleted only after everything that depended on it."""
        graph, changes = plan(spec_data, store)
        await scheduler(provider, store).apply(changes, graph)
        deletes = [
            ChangeOp(
                node_id=state.node_id,
                kind=ChangeKind.DELETE,
                resource_kind=ResourceKind(state.kind),
                before=state.attributes,
                depends_on=state.depends_on,
            )
            for state in store.snapshot().values()
        ]
        log = TransitionLog()

        report = await scheduler(provider, store, on_transition=log).apply(deletes)

        assert report.success
        assert log.index("node-pool:default", NodeState.APPLIED) < log.index(
            "cluster", NodeState.APPLYING
        )
        assert store.list_ids() == []
        assert provider.resources == {}

    @pytest.mark.asyncio
    async def test_delete_waits_for_update_of_remaining_dependent(
        self, store: MemoryStateStore
    ) -> None:
        """A removed role is deleted only after the add-on that used it stops referencing it."""
        provider = MockProvider(delay_seconds=0.05)
        role_attrs = {"name": "csi", "purpose": "workload"}
        addon_before = {"name": "csi", "role": "iam-role:csi"}
        addon_after = {"name": "csi", "role": "arn:aws:iam::123456789012:role/csi-driver"}
        provider.resources = {
            "iam-role:csi": MockResource(
                "iam-role:csi", ResourceKind.IAM_ROLE, "role/csi", role_attrs
            ),
            "addon:csi": MockResource(
                "addon:csi", ResourceKind.ADDON, "addon/csi", addon_before
            ),
        }
        store.put("iam-role:csi", role_attrs, kind="iam-role", identity="role/csi")
        store.put(
            "addon:csi",
            addon_before,
            kind="addon",
            identity="addon/csi",
            depends_on=["iam-role:csi"],
        )
        changes = [
            ChangeOp(
                node_id="iam-role:csi",
                kind=ChangeKind.DELETE,
                resource_kind=ResourceKind.IAM_ROLE,
                before=role_attrs,
            ),
            ChangeOp(
                node_id="addon:csi",
                kind=ChangeKind.UPDATE,
                resource_kind=ResourceKind.ADDON,
                before=addon_before,
                after=addon_after,
                changed_fields=("role",),
            ),
        ]
        log = TransitionLog()

        report = await scheduler(provider, store, on_transition=log, max_workers=4).apply(changes)

        assert report.success
        assert log.index("addon:csi", NodeState.APPLIED) < log.index(
            "iam-role:csi", NodeState.APPLYING
        )
        assert store.get("iam-role:csi") is None
        assert store.get("addon:csi").depends_on == ()

    @pytest.mark.asyncio
    async def test_failed_update_keeps_referenced_node(self, store: MemoryStateStore) -> None:
        """A node still referenced by a failed update is not deleted."""
        provider = MockProvider()
        provider.resources = {
            "network": MockResource("network", ResourceKind.NETWORK, "vpc-1", {"name": "vpc"}),
            "cluster": MockResource("cluster", ResourceKind.CLUSTER, "eks/dev", {"name": "dev"}),
        }
        provider.fail("cluster", PermanentProviderError("UpdateInProgress"))
        store.put("network", {"name": "vpc"}, kind="network", identity="vpc-1")
        store.put(
            "cluster", {"name": "dev"}, kind="cluster", identity="eks/dev", depends_on=["network"]
        )
        changes = [
            ChangeOp(
                node_id="network",
                kind=ChangeKind.DELETE,
                resource_kind=ResourceKind.NETWORK,
                before={"name": "vpc"},
            ),
            ChangeOp(
                node_id="cluster",
                kind=ChangeKind.UPDATE,
                resource_kind=ResourceKind.CLUSTER,
                before={"name": "dev"},
                after={"name": "dev", "subnet_ids": ["subnet-existing"]},
                changed_fields=("subnet_ids",),
            ),
        ]

        report = await scheduler(provider, store).apply(changes)

        assert "cluster" in report.failed
        assert report.blocked["network"].upstream == "cluster"
        assert provider.calls_for("network") == []
        assert store.get("network") is not None


class TestFailureHandling:
    """Tests for retries and failure containment."""

    @pytest.mark.asyncio
    async def test_transient_error_retried(
        self, spec_data: dict, provider: MockProvider, store: MemoryStateStore
    ) -> None:
        """Transient errors are retried with backoff until success."""
        provider.fail("cluster", TransientProviderError("Throttling"), times=2)
        graph, changes = plan(spec_data, store)
        sleep = RecordingSleep()

        report = await scheduler(provider, store, sleep=sleep).apply(changes, graph)

        assert report.success
        assert provider.calls_for("cluster") == ["create", "create", "create"]
        assert len(sleep.calls) == 2

    @pytest.mark.asyncio
    async def test_backoff_grows(
        self, spec_data: dict, provider: MockProvider, store: MemoryStateStore
    ) -> None:
        """Each retry waits at least the exponential backoff, plus bounded jitter."""
        provider.fail("cluster", TransientProviderError("Throttling"), times=2)
        graph, changes = plan(spec_data, store)
        sleep = RecordingSleep()
        retry = RetryPolicy(max_attempts=3, backoff_base_seconds=1.0, backoff_max_seconds=30.0)

        await scheduler(provider, store, sleep=sleep, retry=retry).apply(changes, graph)

        assert 1.0 <= sleep.calls[0] <= 1.2
        assert 2.0 <= sleep.calls[1] <= 2.4

    @pytest.mark.asyncio
    async def test_retries_exhausted(
        self, spec_data: dict, provider: MockProvider, store: MemoryStateStore
    ) -> None:
        """A node fails once max_attempts transient errors occur."""
        provider.fail("cluster", TransientProviderError("ServiceUnavailable"), times=None)
        graph, changes = plan(spec_data, store)

        report = await scheduler(provider, store).apply(changes, graph)

        assert len(provider.calls_for("cluster")) == INSTANT_RETRY.max_attempts
        assert isinstance(report.failed["cluster"], TransientProviderError)
        assert report.blocked["node-pool:default"].upstream == "cluster"

    @pytest.mark.asyncio
    async def test_permanent_error_blocks_dependents(
        self, full_spec: dict, provider: MockProvider, store: MemoryStateStore
    ) -> None:
        """A permanent failure is not retried and blocks its transitive dependents."""
        provider.fail("cluster", PermanentProviderError("quota exceeded"))
        graph, changes = plan(full_spec, store)

        report = await scheduler(provider, store).apply(changes, graph)

        dependents = graph.transitive_dependents("cluster")
        assert provider.calls_for("cluster") == ["create"]
        assert set(report.failed) == {"cluster"}
        assert set(report.blocked) == dependents
        assert all(b.upstream == "cluster" for b in report.blocked.values())
        assert not dependents & provider.called_nodes
        assert not dependents & set(store.list_ids())

    @pytest.mark.asyncio
    async def test_independent_subtrees_continue(
        self, full_spec: dict, provider: MockProvider, store: MemoryStateStore
    ) -> None:
        """Nodes that do not depend on the failure are still applied."""
        provider.fail("cluster", PermanentProviderError("quota exceeded"))
        graph, changes = plan(full_spec, store)

        report = await scheduler(provider, store).apply(changes, graph)

        assert set(report.applied) == {
            "network",
            "iam-role:cluster-role",
            "iam-role:node-role",
            "iam-role:ebs-csi",
            "storage:prod-eks-artifacts",
        }
        assert graph.nodes["cluster"].state == NodeState.FAILED
        assert graph.nodes["addon:csi"].state == NodeState.BLOCKED

    @pytest.mark.asyncio
    async def test_update_of_missing_resource_recreates(
        self, spec_data: dict, provider: MockProvider, store: MemoryStateStore
    ) -> None:
        """A resource deleted out of band is created again on update."""
        graph, changes = plan(spec_data, store)
        await scheduler(provider, store).apply(changes, graph)
        del provider.resources["node-pool:default"]
        provider.reset_calls()

        spec_data["nodePools"][0]["maxCount"] = 5
        graph, changes = plan(spec_data, store)
        report = await scheduler(provider, store).apply(changes, graph)

        assert report.success
        assert provider.calls_for("node-pool:default") == ["update", "create"]
        assert provider.resources["node-pool:default"].attributes["max_count"] == 5

    @pytest.mark.asyncio
    async def test_delete_of_missing_resource_succeeds(
        self, provider: MockProvider, store: MemoryStateStore
    ) -> None:
        """Deleting something already gone counts as applied."""
        store.put("storage:old", {"name": "old"}, kind="storage")
        op = ChangeOp(
            node_id="storage:old",
            kind=ChangeKind.DELETE,
            resource_kind=ResourceKind.STORAGE,
            before={"name": "old"},
        )

        report = await scheduler(provider, store).apply([op])

        assert report.applied == ["storage:old"]
        assert store.get("storage:old") is None

    @pytest.mark.asyncio
    async def test_store_write_failure_fails_node(
        self, spec_data: dict, provider: MockProvider
    ) -> None:
        """A provider success that cannot be recorded fails the node."""
        store = FailingWriteStore({"cluster"})
        graph, changes = plan(spec_data, store)

        report = await scheduler(provider, store).apply(changes, graph)

        assert isinstance(report.failed["cluster"], StateStoreError)
        assert report.blocked["node-pool:default"].upstream == "cluster"
        assert provider.calls_for("node-pool:default") == []

    @pytest.mark.asyncio
    async def test_slow_call_runs_once_and_is_recorded(self, store: MemoryStateStore) -> None:
        """A long-running provider call is awaited to completion, never re-issued alongside itself."""
        slow = MockProvider(delay_seconds=0.3)
        retry = RetryPolicy(max_attempts=3, backoff_base_seconds=0.0, backoff_max_seconds=0.0)

        report = await scheduler(slow, store, retry=retry).apply(storage_ops(1))

        assert report.applied == ["storage:bucket-0"]
        assert slow.calls_for("storage:bucket-0") == ["create"]
        assert slow.max_active == 1
        assert store.get("storage:bucket-0") is not None


class TestConcurrency:
    """Tests for the worker limit."""

    @pytest.mark.asyncio
    async def test_worker_limit_respected(self, store: MemoryStateStore) -> None:
        """No more than max_workers provider calls run at once."""
        provider = MockProvider(delay_seconds=0.05)

        report = await scheduler(provider, store, max_workers=2).apply(storage_ops(6))

        assert len(report.applied) == 6
        assert provider.max_active <= 2

    @pytest.mark.asyncio
    async def test_independent_nodes_run_in_parallel(self, store: MemoryStateStore) -> None:
        """Independent nodes overlap when workers are available."""
        provider = MockProvider(delay_seconds=0.1)

        await scheduler(provider, store, max_workers=4).apply(storage_ops(4))

        assert provider.max_active > 1

    def test_invalid_worker_count(self, provider: MockProvider, store: MemoryStateStore) -> None:
        with pytest.raises(ValueError, match="max_workers"):
            ApplyScheduler(provider, store, max_workers=0)


class TestCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_before_start(
        self, spec_data: dict, provider: MockProvider, store: MemoryStateStore
    ) -> None:
        """With the event already set nothing is started."""
        graph, changes = plan(spec_data, store)
        cancel = asyncio.Event()
        cancel.set()

        report = await scheduler(provider, store).apply(changes, graph, cancel)

        assert report.cancelled
        assert provider.calls == []
        assert {b.upstream for b in report.blocked.values()} == {CANCELLED}

    @pytest.mark.asyncio
    async def test_cancel_mid_pass(
        self, spec_data: dict, provider: MockProvider, store: MemoryStateStore
    ) -> None:
        """Ops not yet started when cancellation arrives are reported cancelled."""
        graph, changes = plan(spec_data, store)
        cancel = asyncio.Event()

        def on_transition(node_id: str, state: NodeState) -> None:
            if node_id == "cluster" and state == NodeState.APPLIED:
                cancel.set()

        report = await scheduler(provider, store, on_transition=on_transition).apply(
            changes, graph, cancel
        )

        assert report.applied == ["cluster"]
        assert report.blocked["node-pool:default"].upstream == CANCELLED
        assert store.get("cluster") is not None
        assert store.get("node-pool:default") is None
