"""Per-cloud provider adapters."""

from __future__ import annotations

from ..config import Config, ConfigurationError
from ..models import CloudTarget, ClusterSpec
from .base import (
    PermanentProviderError,
    ProviderAdapter,
    ProviderError,
    ProviderResult,
    ResourceNotFoundError,
    ResourceRequest,
    TransientProviderError,
)

__all__ = [
    "PermanentProviderError",
    "ProviderAdapter",
    "ProviderError",
    "ProviderResult",
    "ResourceNotFoundError",
    "ResourceRequest",
    "TransientProviderError",
    "get_adapter",
]


def get_adapter(spec: ClusterSpec, config: Config) -> ProviderAdapter:
    """Build the adapter for the spec's cloud target.

    SDK modules are imported here so that only the target cloud's
    libraries are loaded.

    Raises:
        ConfigurationError: If the cloud's required settings are missing.
    """
    region = spec.cluster.region

    if spec.cloud == CloudTarget.AWS:
        from .aws import WAITER_DELAY_SECONDS, AwsAdapter

        return AwsAdapter(
            region=region,
            waiter_max_attempts=max(1, config.operation_timeout_seconds // WAITER_DELAY_SECONDS),
        )

    if spec.cloud == CloudTarget.AZURE:
        if not config.azure_subscription_id or not config.azure_resource_group:
            raise ConfigurationError(
                "AZURE_SUBSCRIPTION_ID and AZURE_RESOURCE_GROUP are required for cloud 'azure'"
            )
        from .azure import AzureAdapter

        return AzureAdapter(
            subscription_id=config.azure_subscription_id,
            resource_group=config.azure_resource_group,
            region=region,
            operation_timeout_seconds=config.operation_timeout_seconds,
        )

    if spec.cloud == CloudTarget.GCP:
        if not config.gcp_project:
            raise ConfigurationError("GCP_PROJECT is required for cloud 'gcp'")
        from .gcp import GcpAdapter

        return GcpAdapter(
            project=config.gcp_project,
            region=region,
            operation_timeout_seconds=config.operation_timeout_seconds,
        )

    raise ConfigurationError(f"Unsupported cloud target: {spec.cloud}")
