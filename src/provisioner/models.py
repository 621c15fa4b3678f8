"""Pydantic models for cluster specifications with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. A cloud-neutral description that the graph builder expands into nodes
"""

from __future__ import annotations

import ipaddress
import re
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator


class SpecValidationError(Exception):
    """Raised when a ClusterSpec is invalid.

    No provider call and no state mutation happens once this is raised.
    """

    pass


class CloudTarget(str, Enum):
    """Supported managed Kubernetes targets."""

    AZURE = "azure"
    AWS = "aws"
    GCP = "gcp"


class TaintEffect(str, Enum):
    """Kubernetes taint effects."""

    NO_SCHEDULE = "NoSchedule"
    PREFER_NO_SCHEDULE = "PreferNoSchedule"
    NO_EXECUTE = "NoExecute"


class RolePurpose(str, Enum):
    """What an IAM role is used for."""

    CLUSTER = "cluster"
    NODE = "node"
    WORKLOAD = "workload"


class AddonName(str, Enum):
    """Optional managed cluster components."""

    DNS = "dns"
    CNI = "cni"
    CSI = "csi"
    MONITORING = "monitoring"
    POLICY = "policy"


# Add-ons each managed service can toggle
SUPPORTED_ADDONS: dict[CloudTarget, frozenset[AddonName]] = {
    CloudTarget.AWS: frozenset(
        {AddonName.DNS, AddonName.CNI, AddonName.CSI, AddonName.MONITORING}
    ),
    CloudTarget.GCP: frozenset({AddonName.DNS, AddonName.CNI, AddonName.CSI}),
    CloudTarget.AZURE: frozenset({AddonName.CSI, AddonName.MONITORING, AddonName.POLICY}),
}

NAME_PATTERN = r"^[a-z][a-z0-9-]{0,38}[a-z0-9]$"
SERVICE_ACCOUNT_PATTERN = r"^[a-z0-9][a-z0-9-]*/[a-z0-9][a-z0-9-.]*$"

# Role references that point at an existing identity instead of a spec entry
EXTERNAL_ROLE_PREFIXES = ("arn:", "/subscriptions/", "projects/")


def is_external_role_reference(value: str) -> bool:
    """True if a role reference is a provider identifier rather than a role name."""
    return value.startswith(EXTERNAL_ROLE_PREFIXES) or value.endswith(".iam.gserviceaccount.com")


def _validate_cidr(value: str | None) -> str | None:
    if value is None:
        return value
    try:
        ipaddress.ip_network(value, strict=True)
    except ValueError as e:
        raise ValueError(f"invalid CIDR block '{value}': {e}") from e
    return value


class _SpecModel(BaseModel):
    model_config = {"extra": "forbid", "populate_by_name": True, "frozen": True}


# =============================================================================
# Cluster
# =============================================================================


class ClusterConfig(_SpecModel):
    """Managed control plane configuration."""

    name: Annotated[str, Field(pattern=NAME_PATTERN)]
    region: Annotated[str, Field(min_length=1)]
    kubernetes_version: str = Field("1.29", alias="kubernetesVersion")
    role: str | None = None
    endpoint_public_access: bool = Field(True, alias="endpointPublicAccess")
    endpoint_private_access: bool = Field(False, alias="endpointPrivateAccess")
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("kubernetes_version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        if not re.match(r"^1\.\d{1,2}(\.\d+)?$", v):
            raise ValueError("kubernetesVersion must look like 1.29 or 1.29.3")
        return v


class TaintConfig(_SpecModel):
    """Node taint."""

    key: Annotated[str, Field(min_length=1)]
    value: str = ""
    effect: TaintEffect = TaintEffect.NO_SCHEDULE


class NodePoolConfig(_SpecModel):
    """Node pool configuration.

    Count consistency (min <= desired <= max) is checked by the graph
    builder so that it surfaces as a SpecValidationError with the pool name.
    """

    name: Annotated[str, Field(pattern=r"^[a-z][a-z0-9-]{0,11}$")]
    instance_type: Annotated[str, Field(min_length=1, alias="instanceType")]
    min_count: Annotated[int, Field(ge=0, le=1000, alias="minCount")] = 1
    max_count: Annotated[int, Field(ge=0, le=1000, alias="maxCount")] = 1
    desired_count: Annotated[int, Field(ge=0, le=1000)] | None = Field(
        None, alias="desiredCount"
    )
    enable_autoscaling: bool = Field(False, alias="enableAutoscaling")
    labels: dict[str, str] = Field(default_factory=dict)
    taints: list[TaintConfig] = Field(default_factory=list)
    disk_size_gb: Annotated[int, Field(ge=10, le=4096, alias="diskSizeGb")] = 100
    role: str | None = None

    @property
    def effective_desired_count(self) -> int:
        """Desired count, defaulting to the minimum."""
        return self.min_count if self.desired_count is None else self.desired_count


# =============================================================================
# Networking
# =============================================================================


class SubnetConfig(_SpecModel):
    """Subnet inside a managed network."""

    name: Annotated[str, Field(min_length=1)]
    cidr: str

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return _validate_cidr(v)  # type: ignore[return-value]


class NetworkConfig(_SpecModel):
    """Network attachment.

    Either reference an existing network by ``id`` (with its subnet ids),
    or describe one to create with ``name`` and ``addressSpace``.
    """

    id: str | None = None
    subnet_ids: list[str] = Field(default_factory=list, alias="subnetIds")
    name: str | None = None
    address_space: str | None = Field(None, alias="addressSpace")
    subnets: list[SubnetConfig] = Field(default_factory=list)
    pod_cidr: str | None = Field(None, alias="podCidr")
    service_cidr: str | None = Field(None, alias="serviceCidr")

    @field_validator("address_space", "pod_cidr", "service_cidr")
    @classmethod
    def validate_cidrs(cls, v: str | None) -> str | None:
        return _validate_cidr(v)

    @model_validator(mode="after")
    def validate_mode(self) -> NetworkConfig:
        if self.id is None and (self.name is None or self.address_space is None):
            raise ValueError("network needs either 'id' or both 'name' and 'addressSpace'")
        if self.id is not None and (self.address_space is not None or self.subnets):
            raise ValueError("a referenced network ('id') cannot declare addressSpace or subnets")
        return self

    @property
    def managed(self) -> bool:
        """True if the network is created by the reconciler."""
        return self.id is None


# =============================================================================
# IAM
# =============================================================================


class IamRoleConfig(_SpecModel):
    """IAM role (or identity) used by the cluster, its nodes or a workload.

    Exactly one of ``arn`` (existing role) or ``create`` must be set.
    ``service_account`` (``namespace/name``) adds a workload identity
    binding for the role once the cluster exists.
    """

    name: Annotated[str, Field(pattern=NAME_PATTERN)]
    arn: str | None = None
    create: bool = False
    purpose: RolePurpose = RolePurpose.WORKLOAD
    policies: list[str] = Field(default_factory=list)
    service_account: str | None = Field(None, alias="serviceAccount")

    @field_validator("service_account")
    @classmethod
    def validate_service_account(cls, v: str | None) -> str | None:
        if v is not None and not re.match(SERVICE_ACCOUNT_PATTERN, v):
            raise ValueError("serviceAccount must be 'namespace/name'")
        return v

    @model_validator(mode="after")
    def validate_source(self) -> IamRoleConfig:
        if self.arn and self.create:
            raise ValueError(f"role '{self.name}' cannot set both 'arn' and 'create'")
        if self.service_account and not self.create:
            raise ValueError(
                f"role '{self.name}' binds a service account and must set 'create: true'"
            )
        return self


# =============================================================================
# Add-ons and storage
# =============================================================================


class AddonConfig(_SpecModel):
    """Add-on toggle with optional version pin and role reference."""

    enabled: bool = True
    version: str | None = None
    role: str | None = None


class StorageConfig(_SpecModel):
    """Object storage (bucket / storage account) provisioned next to the cluster."""

    name: Annotated[str, Field(pattern=r"^[a-z0-9][a-z0-9-]{2,62}$")]
    storage_class: str = Field("standard", alias="storageClass")
    versioning: bool = False

    @field_validator("storage_class")
    @classmethod
    def validate_storage_class(cls, v: str) -> str:
        valid = {"standard", "infrequent", "archive"}
        if v not in valid:
            raise ValueError(f"storageClass must be one of {sorted(valid)}")
        return v


# =============================================================================
# ClusterSpec
# =============================================================================


class ClusterSpec(_SpecModel):
    """Desired state for one managed Kubernetes cluster and its dependents."""

    cloud: CloudTarget
    environment: str = "dev"
    cluster: ClusterConfig
    node_pools: list[NodePoolConfig] = Field(default_factory=list, alias="nodePools")
    network: NetworkConfig | None = None
    iam: list[IamRoleConfig] = Field(default_factory=list)
    addons: dict[AddonName, AddonConfig] = Field(default_factory=dict)
    storage: list[StorageConfig] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("addons", mode="before")
    @classmethod
    def expand_addon_flags(cls, v: Any) -> Any:
        # `csi: true` is shorthand for `csi: {enabled: true}`
        if isinstance(v, dict):
            return {k: {"enabled": flag} if isinstance(flag, bool) else flag for k, flag in v.items()}
        return v

    @property
    def enabled_addons(self) -> dict[AddonName, AddonConfig]:
        """Add-ons switched on, in a stable order."""
        return {
            name: cfg
            for name, cfg in sorted(self.addons.items(), key=lambda item: item[0].value)
            if cfg.enabled
        }

    def merged_tags(self, *extra: dict[str, str]) -> dict[str, str]:
        """Spec-wide tags plus environment, overridden by resource tags."""
        tags = {"environment": self.environment, "managed-by": "provisioner"}
        tags.update(self.tags)
        for item in extra:
            tags.update(item)
        return tags

    @classmethod
    def parse(cls, data: dict[str, Any]) -> ClusterSpec:
        """Validate raw data, converting pydantic errors to SpecValidationError."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise SpecValidationError(f"Invalid cluster spec: {e}") from e
