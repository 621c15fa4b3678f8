"""Property-based tests for graph construction, diffing and apply ordering."""

import asyncio

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from provider_mock import DEFAULT_CLUSTER_ROLE_ARN, MockProvider

from provisioner.config import RetryPolicy
from provisioner.diff import ChangeKind, DiffEngine
from provisioner.models import ClusterSpec
from provisioner.providers import PermanentProviderError
from provisioner.resource_graph import NodeState, build_graph
from provisioner.scheduler import ApplyScheduler
from provisioner.state_store import MemoryStateStore

PROPERTY_SETTINGS = settings(
    max_examples=25,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)

NO_RETRY = RetryPolicy(max_attempts=1, backoff_base_seconds=0.0, backoff_max_seconds=0.0)


@st.composite
def node_pools(draw, node_role: bool):
    """Generate node pools with consistent scaling bounds."""
    names = draw(
        st.lists(
            st.sampled_from(["system", "workers", "gpu", "batch"]), unique=True, min_size=1, max_size=4
        )
    )
    pools = []
    for name in names:
        autoscaling = draw(st.booleans())
        min_count = draw(st.integers(min_value=0, max_value=3))
        max_count = min_count + (draw(st.integers(min_value=0, max_value=5)) if autoscaling else 0)
        pool = {
            "name": name,
            "instanceType": draw(st.sampled_from(["m5.large", "m5.xlarge", "c6i.2xlarge"])),
            "minCount": min_count,
            "maxCount": max_count,
            "enableAutoscaling": autoscaling,
        }
        if node_role and draw(st.booleans()):
            pool["role"] = "node-role"
        pools.append(pool)
    return pools


@st.composite
def cluster_specs(draw):
    """Generate valid EKS specs covering every resource kind."""
    iam = []
    role = DEFAULT_CLUSTER_ROLE_ARN
    if draw(st.booleans()):
        iam.append({"name": "cluster-role", "create": True, "purpose": "cluster"})
        role = "cluster-role"
    node_role = draw(st.booleans())
    if node_role:
        iam.append({"name": "node-role", "create": True, "purpose": "node"})
    workload = draw(st.booleans())
    if workload:
        iam.append({"name": "app", "create": True, "serviceAccount": "default/app"})

    data = {
        "cloud": "aws",
        "cluster": {
            "name": draw(st.sampled_from(["dev", "stage-eks", "prod-k8s"])),
            "region": "us-east-1",
            "role": role,
        },
        "nodePools": draw(node_pools(node_role)),
        "iam": iam,
    }

    if draw(st.booleans()):
        subnet_count = draw(st.integers(min_value=0, max_value=3))
        data["network"] = {
            "name": "vpc",
            "addressSpace": "10.0.0.0/16",
            "subnets": [
                {"name": f"subnet-{i}", "cidr": f"10.0.{i * 16}.0/20"} for i in range(subnet_count)
            ],
        }

    addons = draw(
        st.lists(st.sampled_from(["dns", "cni", "csi", "monitoring"]), unique=True, max_size=4)
    )
    data["addons"] = {
        name: {"role": "app"} if name == "csi" and workload else True for name in addons
    }
    data["storage"] = [
        {"name": name}
        for name in draw(st.lists(st.sampled_from(["logs-bucket", "artifacts"]), unique=True))
    ]
    return ClusterSpec.parse(data)


def record_all(store, graph):
    for node in graph.nodes.values():
        store.put(node.id, node.attributes, kind=node.kind.value, depends_on=node.depends_on)


@PROPERTY_SETTINGS
@given(spec=cluster_specs())
def test_graph_is_acyclic_and_closed(spec):
    """Every dependency exists and the topological order respects it."""
    graph = build_graph(spec)

    order = graph.topological_sort()
    position = {node_id: i for i, node_id in enumerate(order)}

    assert sorted(order) == sorted(graph.nodes)
    for node in graph.nodes.values():
        for dep in node.depends_on:
            assert dep in graph.nodes
            assert position[dep] < position[node.id]


@PROPERTY_SETTINGS
@given(spec=cluster_specs())
def test_empty_store_creates_every_node(spec):
    """Against an empty store each node is created exactly once."""
    graph = build_graph(spec)

    changes = DiffEngine().diff(graph, MemoryStateStore())

    assert sorted(c.node_id for c in changes) == sorted(graph.nodes)
    assert {c.kind for c in changes} <= {ChangeKind.CREATE}


@PROPERTY_SETTINGS
@given(spec=cluster_specs())
def test_converged_store_is_noop(spec):
    """Recorded state equal to the desired state yields no mutations."""
    graph = build_graph(spec)
    store = MemoryStateStore()
    record_all(store, graph)

    changes = DiffEngine().diff(build_graph(spec), store)

    assert all(c.kind == ChangeKind.NO_OP for c in changes)


@PROPERTY_SETTINGS
@given(spec=cluster_specs(), workers=st.integers(min_value=1, max_value=4))
def test_nodes_apply_after_dependencies(spec, workers):
    """No node starts applying before all of its dependencies applied."""
    graph = build_graph(spec)
    store = MemoryStateStore()
    changes = DiffEngine().diff(graph, store)
    events = []

    scheduler = ApplyScheduler(
        MockProvider(),
        store,
        retry=NO_RETRY,
        max_workers=workers,
        on_transition=lambda node_id, state: events.append((node_id, state)),
    )
    report = asyncio.run(scheduler.apply(changes, graph))

    assert report.success
    assert sorted(store.list_ids()) == sorted(graph.nodes)
    for node in graph.nodes.values():
        started = events.index((node.id, NodeState.APPLYING))
        for dep in node.depends_on:
            assert events.index((dep, NodeState.APPLIED)) < started


@PROPERTY_SETTINGS
@given(spec=cluster_specs(), data=st.data())
def test_failure_blocks_all_dependents(spec, data):
    """A permanent failure blocks its transitive dependents and nothing else."""
    graph = build_graph(spec)
    failing = data.draw(st.sampled_from(sorted(graph.nodes)))
    dependents = graph.transitive_dependents(failing)
    provider = MockProvider()
    provider.fail(failing, PermanentProviderError("injected"), times=None)
    store = MemoryStateStore()

    scheduler = ApplyScheduler(provider, store, retry=NO_RETRY)
    report = asyncio.run(scheduler.apply(DiffEngine().diff(graph, store), graph))

    assert list(report.failed) == [failing]
    assert set(report.blocked) == dependents
    assert {b.upstream for b in report.blocked.values()} <= {failing}
    assert not provider.called_nodes & dependents
    assert set(report.applied) == set(graph.nodes) - dependents - {failing}
