"""In-memory provider for scheduler and reconciler tests.

Key Features:
- In-memory resource state keyed by node id
- Call log with start order and peak concurrency
- Error injection per node id for retry and blocking scenarios
- Provider-populated outputs (endpoints, issuers, role ARNs)

Usage:
    provider = MockProvider()
    provider.fail("cluster", PermanentProviderError("quota exceeded"))

    reconciler = Reconciler(config, adapter=provider, store=MemoryStateStore())
    result = await reconciler.reconcile(spec)

    assert provider.calls_for("node-pool:default") == []
"""

from .provider import MockProvider, MockResource, ProviderCall
from .specs import DEFAULT_CLUSTER_ROLE_ARN, cluster_spec_data, full_spec_data

__all__ = [
    "DEFAULT_CLUSTER_ROLE_ARN",
    "MockProvider",
    "MockResource",
    "ProviderCall",
    "cluster_spec_data",
    "full_spec_data",
]
