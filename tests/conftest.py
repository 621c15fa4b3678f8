"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from provider_mock import MockProvider, cluster_spec_data, full_spec_data  # noqa: E402

from provisioner.config import Config, RetryPolicy  # noqa: E402
from provisioner.state_store import MemoryStateStore  # noqa: E402


@pytest.fixture
def provider() -> MockProvider:
    """In-memory provider adapter."""
    return MockProvider()


@pytest.fixture
def store() -> MemoryStateStore:
    """Empty in-memory state store."""
    return MemoryStateStore()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Configuration with instant retries."""
    return Config(
        state_dir=tmp_path / "state",
        retry=RetryPolicy(max_attempts=3, backoff_base_seconds=0.0, backoff_max_seconds=0.0),
    )


@pytest.fixture
def spec_data() -> dict:
    """Minimal EKS spec: external cluster role, one autoscaling pool."""
    return cluster_spec_data()


@pytest.fixture
def full_spec() -> dict:
    """EKS spec with network, IAM roles, bindings, add-ons and storage."""
    return full_spec_data()
