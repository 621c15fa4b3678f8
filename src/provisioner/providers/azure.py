"""Azure adapter: AKS through the ARM generic resource API.

Every resource is addressed by its ARM id and written with
``resources.begin_create_or_update_by_id``, which is an idempotent PUT.
Add-ons are profiles on the managed cluster and are toggled with a
read-modify-write of the cluster resource.

API versions are pinned per resource type.
"""

from __future__ import annotations

import ipaddress
import logging
import uuid
from collections.abc import Callable
from typing import Any

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError as AzureResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.core.polling import LROPoller
from azure.identity import DefaultAzureCredential
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    GenericResource,
    Identity,
    IdentityUserAssignedIdentitiesValue,
    Sku,
)

from ..models import CloudTarget
from ..resource_graph import CLUSTER_NODE_ID, NETWORK_NODE_ID
from .base import (
    PermanentProviderError,
    ProviderAdapter,
    ProviderError,
    ProviderResult,
    ResourceNotFoundError,
    ResourceRequest,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

API_VERSIONS = {
    "Microsoft.ContainerService/managedClusters": "2024-02-01",
    "Microsoft.Network/virtualNetworks": "2023-09-01",
    "Microsoft.ManagedIdentity/userAssignedIdentities": "2023-01-31",
    "Microsoft.Authorization/roleAssignments": "2022-04-01",
    "Microsoft.Storage/storageAccounts": "2023-01-01",
}

TRANSIENT_STATUS_CODES = frozenset({408, 409, 429})

SYSTEM_POOL_NAME = "system"
SYSTEM_POOL_VM_SIZE = "Standard_D2s_v5"
FEDERATED_AUDIENCE = "api://AzureADTokenExchange"

# AKS addon profile keys; csi is a storage profile flag instead
AKS_ADDON_PROFILES = {"monitoring": "omsagent", "policy": "azurepolicy"}

ACCESS_TIERS = {"standard": "Hot", "infrequent": "Cool", "archive": "Cold"}

# Namespace for deterministic role assignment names
ROLE_ASSIGNMENT_NAMESPACE = uuid.UUID("6f1f4d3e-5b0a-4c8e-9a3f-2d7c1b9e8a40")


def _taint_string(taint: dict[str, str]) -> str:
    value = f"={taint['value']}" if taint.get("value") else ""
    return f"{taint['key']}{value}:{taint['effect']}"


def _storage_account_name(name: str) -> str:
    # Storage account names are 3-24 lowercase alphanumerics
    return name.replace("-", "")[:24]


class AzureAdapter(ProviderAdapter):
    """Provider adapter for Azure Kubernetes Service."""

    cloud = CloudTarget.AZURE
    sdk_errors = (AzureError,)

    def __init__(
        self,
        subscription_id: str,
        resource_group: str,
        region: str,
        client: ResourceManagementClient | None = None,
        operation_timeout_seconds: int = 1800,
    ) -> None:
        self._subscription_id = subscription_id
        self._resource_group = resource_group
        self._region = region
        self._timeout = operation_timeout_seconds
        self._client = client or ResourceManagementClient(
            credential=DefaultAzureCredential(),
            subscription_id=subscription_id,
        )
        self._resource_group_ready = False

    @property
    def _scope(self) -> str:
        return f"/subscriptions/{self._subscription_id}/resourceGroups/{self._resource_group}"

    def _resource_id(self, resource_type: str, name: str) -> str:
        return f"{self._scope}/providers/{resource_type}/{name}"

    def _cluster_id(self, name: str) -> str:
        return self._resource_id("Microsoft.ContainerService/managedClusters", name)

    def translate_error(self, error: Exception, node_id: str) -> ProviderError:
        if isinstance(error, AzureResourceNotFoundError):
            return ResourceNotFoundError(str(error), node_id=node_id, code="NotFound")
        if isinstance(error, ClientAuthenticationError):
            return PermanentProviderError(str(error), node_id=node_id, code="AuthenticationFailed")
        if isinstance(error, HttpResponseError):
            status = error.status_code or 0
            code = getattr(error.error, "code", None) if error.error else None
            if status == 404:
                return ResourceNotFoundError(str(error), node_id=node_id, code=code or "NotFound")
            if status in TRANSIENT_STATUS_CODES or status >= 500:
                return TransientProviderError(str(error), node_id=node_id, code=code or str(status))
            return PermanentProviderError(str(error), node_id=node_id, code=code or str(status))
        if isinstance(error, (ServiceRequestError, ServiceResponseError)):
            return TransientProviderError(str(error), node_id=node_id, code=type(error).__name__)
        return PermanentProviderError(str(error), node_id=node_id, code=type(error).__name__)

    # =========================================================================
    # Generic resource helpers
    # =========================================================================

    def _wait(self, begin: Callable[[], LROPoller[Any]], what: str) -> Any:
        poller = begin()
        result = poller.result(timeout=self._timeout)
        if not poller.done():
            raise TransientProviderError(
                f"{what} did not complete within {self._timeout}s", code="OperationTimeout"
            )
        return result

    def _api_version(self, resource_id: str) -> str:
        for resource_type, version in API_VERSIONS.items():
            if f"/providers/{resource_type}/" in resource_id:
                return version
        raise PermanentProviderError(f"No API version known for {resource_id}")

    def _ensure_resource_group(self, tags: dict[str, str]) -> None:
        if self._resource_group_ready:
            return
        self._client.resource_groups.create_or_update(
            self._resource_group, {"location": self._region, "tags": tags}
        )
        self._resource_group_ready = True

    def _get(self, resource_id: str) -> GenericResource:
        return self._client.resources.get_by_id(resource_id, self._api_version(resource_id))

    def _put(self, resource_id: str, body: GenericResource) -> GenericResource:
        return self._wait(
            lambda: self._client.resources.begin_create_or_update_by_id(
                resource_id, self._api_version(resource_id), body
            ),
            f"PUT {resource_id}",
        )

    def _delete(self, resource_id: str) -> None:
        self._wait(
            lambda: self._client.resources.begin_delete_by_id(
                resource_id, self._api_version(resource_id)
            ),
            f"DELETE {resource_id}",
        )

    @staticmethod
    def _props(resource: GenericResource) -> dict[str, Any]:
        return dict(resource.properties or {})

    # =========================================================================
    # Network
    # =========================================================================

    def _network_result(self, resource: GenericResource) -> ProviderResult:
        subnets = self._props(resource).get("subnets", [])
        return ProviderResult(
            identity=resource.id,
            outputs={"vnet_id": resource.id, "subnet_ids": [s["id"] for s in subnets if "id" in s]},
        )

    def _put_network(self, req: ResourceRequest) -> ProviderResult:
        a = req.attributes
        self._ensure_resource_group(a["tags"])
        resource_id = self._resource_id("Microsoft.Network/virtualNetworks", req.name)
        body = GenericResource(
            location=a["region"],
            tags=dict(a["tags"]),
            properties={
                "addressSpace": {"addressPrefixes": [a["address_space"]]},
                "subnets": [
                    {"name": s["name"], "properties": {"addressPrefix": s["cidr"]}}
                    for s in a["subnets"]
                ],
            },
        )
        return self._network_result(self._put(resource_id, body))

    def _get_network(self, req: ResourceRequest) -> ProviderResult:
        resource_id = self._resource_id("Microsoft.Network/virtualNetworks", req.name)
        return self._network_result(self._get(resource_id))

    def _delete_network(self, req: ResourceRequest) -> ProviderResult:
        self._delete(self._resource_id("Microsoft.Network/virtualNetworks", req.name))
        return ProviderResult(identity=req.identity)

    # =========================================================================
    # Identities, role assignments, federated credentials
    # =========================================================================

    def _identity_id(self, name: str) -> str:
        return self._resource_id("Microsoft.ManagedIdentity/userAssignedIdentities", name)

    def _identity_result(self, resource: GenericResource) -> ProviderResult:
        props = self._props(resource)
        return ProviderResult(
            identity=resource.id,
            outputs={
                "id": resource.id,
                "name": resource.name,
                "principal_id": props.get("principalId"),
                "client_id": props.get("clientId"),
            },
        )

    def _role_definition_id(self, policy: str) -> str:
        if policy.startswith("/"):
            return policy
        return (
            f"/subscriptions/{self._subscription_id}/providers/"
            f"Microsoft.Authorization/roleDefinitions/{policy}"
        )

    def _role_assignment_id(self, principal_id: str, role_definition_id: str) -> str:
        name = uuid.uuid5(ROLE_ASSIGNMENT_NAMESPACE, f"{principal_id}:{role_definition_id}")
        return f"{self._scope}/providers/Microsoft.Authorization/roleAssignments/{name}"

    def _put_iam_role(self, req: ResourceRequest) -> ProviderResult:
        a = req.attributes
        self._ensure_resource_group(a["tags"])
        identity = self._put(
            self._identity_id(req.name),
            GenericResource(location=a["region"], tags=dict(a["tags"])),
        )
        result = self._identity_result(identity)
        principal_id = result.outputs["principal_id"]

        desired = {self._role_definition_id(p) for p in a["policies"]}
        previous = {self._role_definition_id(p) for p in (req.before or {}).get("policies", [])}
        for role_definition_id in sorted(desired):
            self._put(
                self._role_assignment_id(principal_id, role_definition_id),
                GenericResource(properties={
                    "roleDefinitionId": role_definition_id,
                    "principalId": principal_id,
                    "principalType": "ServicePrincipal",
                }),
            )
        for role_definition_id in sorted(previous - desired):
            self._delete(self._role_assignment_id(principal_id, role_definition_id))
        return result

    def _get_iam_role(self, req: ResourceRequest) -> ProviderResult:
        return self._identity_result(self._get(self._identity_id(req.name)))

    def _delete_iam_role(self, req: ResourceRequest) -> ProviderResult:
        self._delete(self._identity_id(req.name))
        return ProviderResult(identity=req.identity)

    def _federated_credential_id(self, req: ResourceRequest) -> str:
        identity_id = req.resolve(req.attributes["role"])
        return f"{identity_id}/federatedIdentityCredentials/{req.name}"

    def _put_iam_binding(self, req: ResourceRequest) -> ProviderResult:
        a = req.attributes
        issuer = req.output(CLUSTER_NODE_ID, "oidc_issuer")
        subject = f"system:serviceaccount:{a['namespace']}:{a['service_account']}"
        resource_id = self._federated_credential_id(req)
        self._put(
            resource_id,
            GenericResource(properties={
                "issuer": issuer,
                "subject": subject,
                "audiences": [FEDERATED_AUDIENCE],
            }),
        )
        return ProviderResult(identity=resource_id, outputs={"issuer": issuer, "subject": subject})

    def _get_iam_binding(self, req: ResourceRequest) -> ProviderResult:
        resource_id = self._federated_credential_id(req)
        props = self._props(self._get(resource_id))
        return ProviderResult(
            identity=resource_id,
            outputs={"issuer": props.get("issuer"), "subject": props.get("subject")},
        )

    def _delete_iam_binding(self, req: ResourceRequest) -> ProviderResult:
        resource_id = self._federated_credential_id(req)
        self._delete(resource_id)
        return ProviderResult(identity=resource_id)

    # =========================================================================
    # Managed cluster
    # =========================================================================

    def _cluster_subnet(self, req: ResourceRequest) -> str | None:
        a = req.attributes
        if a.get("network") == NETWORK_NODE_ID:
            subnet_ids = req.output(NETWORK_NODE_ID, "subnet_ids")
        else:
            subnet_ids = a.get("subnet_ids") or []
        return subnet_ids[0] if subnet_ids else None

    def _cluster_result(self, resource: GenericResource) -> ProviderResult:
        props = self._props(resource)
        return ProviderResult(
            identity=resource.id,
            outputs={
                "id": resource.id,
                "fqdn": props.get("fqdn"),
                "private_fqdn": props.get("privateFQDN"),
                "endpoint": f"https://{props['fqdn']}" if props.get("fqdn") else None,
                "oidc_issuer": props.get("oidcIssuerProfile", {}).get("issuerURL"),
                "node_resource_group": props.get("nodeResourceGroup"),
                "status": props.get("provisioningState"),
                "subnet_id": next(
                    (p.get("vnetSubnetID") for p in props.get("agentPoolProfiles", [])), None
                ),
            },
        )

    def _cluster_properties(self, req: ResourceRequest) -> dict[str, Any]:
        a = req.attributes
        network_profile: dict[str, Any] = {"networkPlugin": "azure"}
        if a.get("pod_cidr"):
            network_profile.update({"networkPluginMode": "overlay", "podCidr": a["pod_cidr"]})
        if a.get("service_cidr"):
            service_network = ipaddress.ip_network(a["service_cidr"])
            network_profile.update({
                "serviceCidr": a["service_cidr"],
                "dnsServiceIP": str(service_network[10]),
            })
        return {
            "kubernetesVersion": a["kubernetes_version"],
            "networkProfile": network_profile,
            "oidcIssuerProfile": {"enabled": bool(a["workload_identity"])},
            "securityProfile": {"workloadIdentity": {"enabled": bool(a["workload_identity"])}},
            "apiServerAccessProfile": {
                "enablePrivateCluster": a["endpoint_private_access"]
                and not a["endpoint_public_access"],
            },
        }

    def _cluster_identity(self, req: ResourceRequest) -> Identity:
        identity_id = req.resolve(req.attributes.get("role"))
        if identity_id is None:
            return Identity(type="SystemAssigned")
        return Identity(
            type="UserAssigned",
            user_assigned_identities={identity_id: IdentityUserAssignedIdentitiesValue()},
        )

    def _put_cluster(self, req: ResourceRequest) -> ProviderResult:
        a = req.attributes
        self._ensure_resource_group(a["tags"])
        resource_id = self._cluster_id(req.name)

        if req.before is None:
            system_pool: dict[str, Any] = {
                "name": SYSTEM_POOL_NAME,
                "mode": "System",
                "count": 1,
                "vmSize": SYSTEM_POOL_VM_SIZE,
                "osType": "Linux",
                "type": "VirtualMachineScaleSets",
            }
            subnet_id = self._cluster_subnet(req)
            if subnet_id:
                system_pool["vnetSubnetID"] = subnet_id
            properties = {
                **self._cluster_properties(req),
                "dnsPrefix": req.name,
                "agentPoolProfiles": [system_pool],
            }
        else:
            if req.changed("network", "subnet_ids", "pod_cidr", "service_cidr", "region"):
                raise PermanentProviderError(
                    f"Network settings of AKS cluster '{req.name}' cannot change in place",
                    code="ImmutableField",
                )
            # PUT replaces the whole resource, so start from what exists
            properties = {**self._props(self._get(resource_id)), **self._cluster_properties(req)}

        body = GenericResource(
            location=a["region"],
            tags=dict(a["tags"]),
            identity=self._cluster_identity(req),
            properties=properties,
        )
        return self._cluster_result(self._put(resource_id, body))

    def _get_cluster(self, req: ResourceRequest) -> ProviderResult:
        return self._cluster_result(self._get(self._cluster_id(req.name)))

    def _delete_cluster(self, req: ResourceRequest) -> ProviderResult:
        self._delete(self._cluster_id(req.name))
        return ProviderResult(identity=req.identity)

    # =========================================================================
    # Agent pools
    # =========================================================================

    def _agent_pool_id(self, req: ResourceRequest) -> str:
        cluster_name = req.cluster.attributes["name"]
        return f"{self._cluster_id(cluster_name)}/agentPools/{req.name}"

    def _agent_pool_result(self, resource: GenericResource) -> ProviderResult:
        props = self._props(resource)
        return ProviderResult(
            identity=resource.id,
            outputs={
                "id": resource.id,
                "status": props.get("provisioningState"),
                "current_count": props.get("count"),
                "node_image_version": props.get("nodeImageVersion"),
            },
        )

    def _put_node_pool(self, req: ResourceRequest) -> ProviderResult:
        a = req.attributes
        if a.get("role"):
            raise PermanentProviderError(
                "AKS node pools run as the cluster kubelet identity; per-pool roles are not supported",
                code="UnsupportedField",
            )
        if req.before is not None and req.changed("instance_type", "disk_size_gb"):
            raise PermanentProviderError(
                f"Agent pool '{req.name}' must be replaced to change its VM size or disk",
                code="ImmutableField",
            )

        properties: dict[str, Any] = {
            "mode": "User",
            "osType": "Linux",
            "type": "VirtualMachineScaleSets",
            "vmSize": a["instance_type"],
            "osDiskSizeGB": a["disk_size_gb"],
            "count": a["desired_count"],
            "enableAutoScaling": a["enable_autoscaling"],
            "nodeLabels": dict(a["labels"]),
            "nodeTaints": [_taint_string(t) for t in a["taints"]],
            "tags": dict(a["tags"]),
        }
        if a["enable_autoscaling"]:
            properties.update({"minCount": a["min_count"], "maxCount": a["max_count"]})
        subnet_id = req.cluster.outputs.get("subnet_id")
        if subnet_id:
            properties["vnetSubnetID"] = subnet_id

        resource = self._put(self._agent_pool_id(req), GenericResource(properties=properties))
        return self._agent_pool_result(resource)

    def _get_node_pool(self, req: ResourceRequest) -> ProviderResult:
        return self._agent_pool_result(self._get(self._agent_pool_id(req)))

    def _delete_node_pool(self, req: ResourceRequest) -> ProviderResult:
        self._delete(self._agent_pool_id(req))
        return ProviderResult(identity=req.identity)

    # =========================================================================
    # Add-ons (cluster profiles)
    # =========================================================================

    def _set_addon(self, req: ResourceRequest, enabled: bool) -> ProviderResult:
        cluster_name = req.cluster.attributes["name"]
        resource_id = self._cluster_id(cluster_name)
        cluster = self._get(resource_id)
        properties = self._props(cluster)

        if req.name == "csi":
            storage = dict(properties.get("storageProfile") or {})
            storage["diskCSIDriver"] = {"enabled": enabled}
            storage["fileCSIDriver"] = {"enabled": enabled}
            properties["storageProfile"] = storage
        else:
            profiles = dict(properties.get("addonProfiles") or {})
            profiles[AKS_ADDON_PROFILES[req.name]] = {"enabled": enabled}
            properties["addonProfiles"] = profiles

        self._put(
            resource_id,
            GenericResource(
                location=cluster.location,
                tags=cluster.tags,
                identity=cluster.identity,
                properties=properties,
            ),
        )
        return ProviderResult(
            identity=f"{resource_id}#addon/{req.name}",
            outputs={"status": "Enabled" if enabled else "Disabled"},
        )

    def _put_addon(self, req: ResourceRequest) -> ProviderResult:
        return self._set_addon(req, enabled=True)

    def _get_addon(self, req: ResourceRequest) -> ProviderResult:
        cluster_name = req.cluster.attributes["name"]
        resource_id = self._cluster_id(cluster_name)
        properties = self._props(self._get(resource_id))
        if req.name == "csi":
            enabled = properties.get("storageProfile", {}).get("diskCSIDriver", {}).get("enabled")
        else:
            profile = properties.get("addonProfiles", {}).get(AKS_ADDON_PROFILES[req.name], {})
            enabled = profile.get("enabled")
        if not enabled:
            raise ResourceNotFoundError(f"Add-on '{req.name}' is not enabled on {cluster_name}")
        return ProviderResult(identity=f"{resource_id}#addon/{req.name}", outputs={"status": "Enabled"})

    def _delete_addon(self, req: ResourceRequest) -> ProviderResult:
        return self._set_addon(req, enabled=False)

    # =========================================================================
    # Storage accounts
    # =========================================================================

    def _storage_id(self, req: ResourceRequest) -> str:
        return self._resource_id("Microsoft.Storage/storageAccounts", _storage_account_name(req.name))

    def _storage_result(self, resource: GenericResource) -> ProviderResult:
        props = self._props(resource)
        return ProviderResult(
            identity=resource.id,
            outputs={
                "id": resource.id,
                "endpoint": props.get("primaryEndpoints", {}).get("blob"),
                "status": props.get("provisioningState"),
            },
        )

    def _put_storage(self, req: ResourceRequest) -> ProviderResult:
        a = req.attributes
        self._ensure_resource_group(a["tags"])
        resource_id = self._storage_id(req)
        resource = self._put(
            resource_id,
            GenericResource(
                location=a["region"],
                tags=dict(a["tags"]),
                kind="StorageV2",
                sku=Sku(name="Standard_LRS"),
                properties={
                    "accessTier": ACCESS_TIERS[a["storage_class"]],
                    "minimumTlsVersion": "TLS1_2",
                    "allowBlobPublicAccess": False,
                },
            ),
        )
        self._put(
            f"{resource_id}/blobServices/default",
            GenericResource(properties={"isVersioningEnabled": bool(a["versioning"])}),
        )
        return self._storage_result(resource)

    def _get_storage(self, req: ResourceRequest) -> ProviderResult:
        return self._storage_result(self._get(self._storage_id(req)))

    def _delete_storage(self, req: ResourceRequest) -> ProviderResult:
        self._delete(self._storage_id(req))
        return ProviderResult(identity=req.identity)
