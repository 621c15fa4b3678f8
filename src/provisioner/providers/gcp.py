"""GCP adapter: GKE through the google-cloud client libraries.

Clusters and node pools use ``container_v1.ClusterManagerClient``; add-ons
are fields of the cluster's ``AddonsConfig``. Networks come from
``compute_v1``, service accounts from ``iam_admin_v1`` and buckets from
``google-cloud-storage``. Project role grants go through
``resourcemanager_v3``.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from google.api_core import exceptions as gcp_exceptions
from google.cloud import compute_v1, container_v1, iam_admin_v1, resourcemanager_v3, storage

from ..models import CloudTarget
from ..resource_graph import NETWORK_NODE_ID
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

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    gcp_exceptions.TooManyRequests,
    gcp_exceptions.ServiceUnavailable,
    gcp_exceptions.DeadlineExceeded,
    gcp_exceptions.InternalServerError,
    gcp_exceptions.GatewayTimeout,
    gcp_exceptions.Aborted,
    gcp_exceptions.Conflict,
    gcp_exceptions.RetryError,
)

SYSTEM_POOL_NAME = "system"
SYSTEM_POOL_MACHINE_TYPE = "e2-standard-2"
NODE_IMAGE_TYPE = "COS_CONTAINERD"
WORKLOAD_IDENTITY_ROLE = "roles/iam.workloadIdentityUser"

GKE_TAINT_EFFECTS = {
    "NoSchedule": container_v1.NodeTaint.Effect.NO_SCHEDULE,
    "PreferNoSchedule": container_v1.NodeTaint.Effect.PREFER_NO_SCHEDULE,
    "NoExecute": container_v1.NodeTaint.Effect.NO_EXECUTE,
}

GCS_STORAGE_CLASSES = {"standard": "STANDARD", "infrequent": "NEARLINE", "archive": "ARCHIVE"}


def _gke_taints(taints: list[dict[str, str]]) -> list[container_v1.NodeTaint]:
    return [
        container_v1.NodeTaint(
            key=t["key"], value=t.get("value", ""), effect=GKE_TAINT_EFFECTS[t["effect"]]
        )
        for t in taints
    ]


def _labels(tags: dict[str, str]) -> dict[str, str]:
    # GCP labels only allow lowercase keys and values
    return {k.lower(): v.lower() for k, v in tags.items()}


class GcpAdapter(ProviderAdapter):
    """Provider adapter for Google Kubernetes Engine."""

    cloud = CloudTarget.GCP
    sdk_errors = (gcp_exceptions.GoogleAPIError, TimeoutError)

    def __init__(
        self,
        project: str,
        region: str,
        operation_timeout_seconds: int = 1800,
        poll_interval_seconds: float = 10.0,
    ) -> None:
        self._project = project
        self._region = region
        self._timeout = operation_timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._container = container_v1.ClusterManagerClient()
        self._networks = compute_v1.NetworksClient()
        self._subnetworks = compute_v1.SubnetworksClient()
        self._iam = iam_admin_v1.IAMClient()
        self._projects = resourcemanager_v3.ProjectsClient()
        self._storage = storage.Client(project=project)

    @property
    def _location(self) -> str:
        return f"projects/{self._project}/locations/{self._region}"

    def _cluster_path(self, name: str) -> str:
        return f"{self._location}/clusters/{name}"

    def translate_error(self, error: Exception, node_id: str) -> ProviderError:
        code = type(error).__name__
        if isinstance(error, gcp_exceptions.NotFound):
            return ResourceNotFoundError(str(error), node_id=node_id, code=code)
        if isinstance(error, (*TRANSIENT_ERRORS, TimeoutError)):
            return TransientProviderError(str(error), node_id=node_id, code=code)
        if isinstance(error, gcp_exceptions.FailedPrecondition) and "operation" in str(error).lower():
            # GKE serializes operations per cluster
            return TransientProviderError(str(error), node_id=node_id, code=code)
        return PermanentProviderError(str(error), node_id=node_id, code=code)

    def _wait_operation(self, operation: container_v1.Operation) -> None:
        name = f"{self._location}/operations/{operation.name}"
        deadline = time.monotonic() + self._timeout
        while operation.status != container_v1.Operation.Status.DONE:
            if time.monotonic() > deadline:
                raise TransientProviderError(
                    f"GKE operation {operation.name} did not finish within {self._timeout}s",
                    code="OperationTimeout",
                )
            time.sleep(self._poll_interval)
            operation = self._container.get_operation(name=name)

        if operation.error and operation.error.message:
            raise PermanentProviderError(operation.error.message, code=str(operation.error.code))

    # =========================================================================
    # Network
    # =========================================================================

    def _network_result(self, req: ResourceRequest) -> ProviderResult:
        network = self._networks.get(project=self._project, network=req.name)
        subnet_names = [s["name"] for s in req.attributes["subnets"]]
        subnet_links = [
            self._subnetworks.get(project=self._project, region=self._region, subnetwork=name).self_link
            for name in subnet_names
        ]
        return ProviderResult(
            identity=network.self_link,
            outputs={
                "network": network.self_link,
                "subnet_ids": subnet_links,
                "subnet_names": subnet_names,
            },
        )

    def _put_network(self, req: ResourceRequest) -> ProviderResult:
        a = req.attributes
        try:
            self._networks.insert(
                project=self._project,
                network_resource=compute_v1.Network(name=req.name, auto_create_subnetworks=False),
            ).result(timeout=self._timeout)
        except gcp_exceptions.Conflict:
            logger.info("Network already exists, adopting", extra={"network": req.name})

        network_link = self._networks.get(project=self._project, network=req.name).self_link
        for subnet in a["subnets"]:
            try:
                self._subnetworks.insert(
                    project=self._project,
                    region=self._region,
                    subnetwork_resource=compute_v1.Subnetwork(
                        name=subnet["name"],
                        ip_cidr_range=subnet["cidr"],
                        network=network_link,
                    ),
                ).result(timeout=self._timeout)
            except gcp_exceptions.Conflict:
                logger.debug("Subnetwork already exists", extra={"subnetwork": subnet["name"]})

        previous = {s["name"] for s in (req.before or {}).get("subnets", [])}
        for name in sorted(previous - {s["name"] for s in a["subnets"]}):
            self._subnetworks.delete(
                project=self._project, region=self._region, subnetwork=name
            ).result(timeout=self._timeout)

        return self._network_result(req)

    def _get_network(self, req: ResourceRequest) -> ProviderResult:
        return self._network_result(req)

    def _delete_network(self, req: ResourceRequest) -> ProviderResult:
        for subnet in req.attributes["subnets"]:
            try:
                self._subnetworks.delete(
                    project=self._project, region=self._region, subnetwork=subnet["name"]
                ).result(timeout=self._timeout)
            except gcp_exceptions.NotFound:
                logger.debug("Subnetwork already removed", extra={"subnetwork": subnet["name"]})
        self._networks.delete(project=self._project, network=req.name).result(timeout=self._timeout)
        return ProviderResult(identity=req.identity)

    # =========================================================================
    # Service accounts, project roles, workload identity
    # =========================================================================

    def _service_account_email(self, name: str) -> str:
        return f"{name[:30]}@{self._project}.iam.gserviceaccount.com"

    def _service_account_path(self, email: str) -> str:
        return f"projects/{self._project}/serviceAccounts/{email}"

    def _role_result(self, account: Any) -> ProviderResult:
        return ProviderResult(
            identity=account.email,
            outputs={"email": account.email, "unique_id": account.unique_id, "name": account.name},
        )

    def _set_project_roles(self, member: str, add: set[str], remove: set[str]) -> None:
        if not add and not remove:
            return
        resource = f"projects/{self._project}"
        policy = self._projects.get_iam_policy(request={"resource": resource})
        for binding in policy.bindings:
            if binding.role in remove and member in binding.members:
                binding.members.remove(member)
        existing = {b.role for b in policy.bindings if member in b.members}
        for role in sorted(add - existing):
            target = next((b for b in policy.bindings if b.role == role), None)
            if target is None:
                policy.bindings.add(role=role, members=[member])
            else:
                target.members.append(member)
        self._projects.set_iam_policy(request={"resource": resource, "policy": policy})

    def _put_iam_role(self, req: ResourceRequest) -> ProviderResult:
        a = req.attributes
        account_id = req.name[:30]
        try:
            account = self._iam.create_service_account(
                request=iam_admin_v1.CreateServiceAccountRequest(
                    name=f"projects/{self._project}",
                    account_id=account_id,
                    service_account=iam_admin_v1.ServiceAccount(
                        display_name=req.name,
                        description=f"{a['purpose']} identity managed by provisioner",
                    ),
                )
            )
        except gcp_exceptions.Conflict:
            account = self._iam.get_service_account(
                name=self._service_account_path(self._service_account_email(req.name))
            )

        member = f"serviceAccount:{account.email}"
        previous = set((req.before or {}).get("policies", []))
        desired = set(a["policies"])
        self._set_project_roles(member, add=desired, remove=previous - desired)
        return self._role_result(account)

    def _get_iam_role(self, req: ResourceRequest) -> ProviderResult:
        account = self._iam.get_service_account(
            name=self._service_account_path(self._service_account_email(req.name))
        )
        return self._role_result(account)

    def _delete_iam_role(self, req: ResourceRequest) -> ProviderResult:
        email = self._service_account_email(req.name)
        self._set_project_roles(
            f"serviceAccount:{email}", add=set(), remove=set(req.attributes["policies"])
        )
        self._iam.delete_service_account(name=self._service_account_path(email))
        return ProviderResult(identity=req.identity)

    def _workload_member(self, req: ResourceRequest) -> str:
        a = req.attributes
        return f"serviceAccount:{self._project}.svc.id.goog[{a['namespace']}/{a['service_account']}]"

    def _set_workload_binding(self, req: ResourceRequest, present: bool) -> ProviderResult:
        email = req.resolve(req.attributes["role"])
        resource = self._service_account_path(str(email))
        member = self._workload_member(req)

        policy = self._iam.get_iam_policy(request={"resource": resource})
        binding = next((b for b in policy.bindings if b.role == WORKLOAD_IDENTITY_ROLE), None)
        if present:
            if binding is None:
                policy.bindings.add(role=WORKLOAD_IDENTITY_ROLE, members=[member])
            elif member not in binding.members:
                binding.members.append(member)
        elif binding is not None and member in binding.members:
            binding.members.remove(member)
        self._iam.set_iam_policy(request={"resource": resource, "policy": policy})
        return ProviderResult(identity=f"{resource}#{member}", outputs={"subject": member})

    def _put_iam_binding(self, req: ResourceRequest) -> ProviderResult:
        return self._set_workload_binding(req, present=True)

    def _get_iam_binding(self, req: ResourceRequest) -> ProviderResult:
        email = req.resolve(req.attributes["role"])
        resource = self._service_account_path(str(email))
        member = self._workload_member(req)
        policy = self._iam.get_iam_policy(request={"resource": resource})
        if not any(b.role == WORKLOAD_IDENTITY_ROLE and member in b.members for b in policy.bindings):
            raise ResourceNotFoundError(f"{member} is not bound to {email}")
        return ProviderResult(identity=f"{resource}#{member}", outputs={"subject": member})

    def _delete_iam_binding(self, req: ResourceRequest) -> ProviderResult:
        return self._set_workload_binding(req, present=False)

    # =========================================================================
    # Cluster
    # =========================================================================

    def _cluster_result(self, name: str) -> ProviderResult:
        cluster = self._container.get_cluster(name=self._cluster_path(name))
        return ProviderResult(
            identity=cluster.self_link,
            outputs={
                "id": cluster.id,
                "endpoint": f"https://{cluster.endpoint}" if cluster.endpoint else None,
                "certificate_authority": cluster.master_auth.cluster_ca_certificate,
                "status": container_v1.Cluster.Status(cluster.status).name,
                "version": cluster.current_master_version,
                "workload_pool": cluster.workload_identity_config.workload_pool,
            },
        )

    def _network_refs(self, req: ResourceRequest) -> tuple[str | None, str | None]:
        a = req.attributes
        if a.get("network") == NETWORK_NODE_ID:
            subnets = req.output(NETWORK_NODE_ID, "subnet_ids")
            return req.output(NETWORK_NODE_ID, "network"), subnets[0] if subnets else None
        subnet_ids = a.get("subnet_ids") or []
        return a.get("network"), subnet_ids[0] if subnet_ids else None

    def _put_cluster(self, req: ResourceRequest) -> ProviderResult:
        a = req.attributes
        path = self._cluster_path(req.name)

        if req.before is None:
            network, subnetwork = self._network_refs(req)
            service_account = req.resolve(a.get("role"))
            cluster = container_v1.Cluster(
                name=req.name,
                initial_cluster_version=a["kubernetes_version"],
                network=network or "",
                subnetwork=subnetwork or "",
                resource_labels=_labels(a["tags"]),
                ip_allocation_policy=container_v1.IPAllocationPolicy(
                    use_ip_aliases=True,
                    cluster_ipv4_cidr_block=a.get("pod_cidr") or "",
                    services_ipv4_cidr_block=a.get("service_cidr") or "",
                ),
                node_pools=[
                    container_v1.NodePool(
                        name=SYSTEM_POOL_NAME,
                        initial_node_count=1,
                        config=container_v1.NodeConfig(
                            machine_type=SYSTEM_POOL_MACHINE_TYPE,
                            service_account=service_account or "",
                        ),
                    )
                ],
            )
            if a["workload_identity"]:
                cluster.workload_identity_config = container_v1.WorkloadIdentityConfig(
                    workload_pool=f"{self._project}.svc.id.goog"
                )
            if a["endpoint_private_access"] and not a["endpoint_public_access"]:
                cluster.private_cluster_config = container_v1.PrivateClusterConfig(
                    enable_private_nodes=True, enable_private_endpoint=True
                )
            try:
                self._wait_operation(
                    self._container.create_cluster(parent=self._location, cluster=cluster)
                )
            except gcp_exceptions.Conflict:
                logger.info("GKE cluster already exists, adopting", extra={"cluster": req.name})
        else:
            if req.changed("network", "subnet_ids", "pod_cidr", "service_cidr", "role", "region"):
                raise PermanentProviderError(
                    f"Fields {list(req.changed_fields)} of GKE cluster '{req.name}' cannot change in place",
                    code="ImmutableField",
                )
            if req.changed("kubernetes_version"):
                self._wait_operation(self._container.update_cluster(
                    name=path,
                    update=container_v1.ClusterUpdate(desired_master_version=a["kubernetes_version"]),
                ))
            if req.changed("workload_identity"):
                pool = f"{self._project}.svc.id.goog" if a["workload_identity"] else ""
                self._wait_operation(self._container.update_cluster(
                    name=path,
                    update=container_v1.ClusterUpdate(
                        desired_workload_identity_config=container_v1.WorkloadIdentityConfig(
                            workload_pool=pool
                        )
                    ),
                ))
            if req.changed("tags"):
                current = self._container.get_cluster(name=path)
                self._wait_operation(self._container.set_labels(
                    name=path,
                    resource_labels=_labels(a["tags"]),
                    label_fingerprint=current.label_fingerprint,
                ))

        return self._cluster_result(req.name)

    def _get_cluster(self, req: ResourceRequest) -> ProviderResult:
        return self._cluster_result(req.name)

    def _delete_cluster(self, req: ResourceRequest) -> ProviderResult:
        self._wait_operation(self._container.delete_cluster(name=self._cluster_path(req.name)))
        return ProviderResult(identity=req.identity)

    # =========================================================================
    # Node pools
    # =========================================================================

    def _node_pool_path(self, req: ResourceRequest) -> str:
        return f"{self._cluster_path(req.cluster.attributes['name'])}/nodePools/{req.name}"

    def _node_pool_result(self, req: ResourceRequest) -> ProviderResult:
        pool = self._container.get_node_pool(name=self._node_pool_path(req))
        return ProviderResult(
            identity=pool.self_link,
            outputs={
                "status": container_v1.NodePool.Status(pool.status).name,
                "version": pool.version,
                "instance_groups": list(pool.instance_group_urls),
            },
        )

    def _autoscaling(self, a: Any) -> container_v1.NodePoolAutoscaling:
        if not a["enable_autoscaling"]:
            return container_v1.NodePoolAutoscaling(enabled=False)
        return container_v1.NodePoolAutoscaling(
            enabled=True, min_node_count=a["min_count"], max_node_count=a["max_count"]
        )

    def _put_node_pool(self, req: ResourceRequest) -> ProviderResult:
        a = req.attributes
        path = self._node_pool_path(req)

        if req.before is None:
            pool = container_v1.NodePool(
                name=req.name,
                initial_node_count=a["desired_count"],
                autoscaling=self._autoscaling(a),
                config=container_v1.NodeConfig(
                    machine_type=a["instance_type"],
                    disk_size_gb=a["disk_size_gb"],
                    labels=dict(a["labels"]),
                    taints=_gke_taints(a["taints"]),
                    service_account=req.resolve(a.get("role")) or "",
                    resource_labels=_labels(a["tags"]),
                ),
            )
            try:
                self._wait_operation(self._container.create_node_pool(
                    parent=self._cluster_path(req.cluster.attributes["name"]),
                    node_pool=pool,
                ))
            except gcp_exceptions.Conflict:
                logger.info("Node pool already exists, adopting", extra={"node_pool": req.name})
        else:
            if req.changed("instance_type", "disk_size_gb", "role"):
                raise PermanentProviderError(
                    f"Node pool '{req.name}' must be replaced to change its machine, disk or role",
                    code="ImmutableField",
                )
            if req.changed("enable_autoscaling", "min_count", "max_count"):
                self._wait_operation(self._container.set_node_pool_autoscaling(
                    name=path, autoscaling=self._autoscaling(a)
                ))
            if req.changed("desired_count") and not a["enable_autoscaling"]:
                self._wait_operation(self._container.set_node_pool_size(
                    name=path, node_count=a["desired_count"]
                ))
            if req.changed("labels", "taints", "tags"):
                self._wait_operation(self._container.update_node_pool(
                    request=container_v1.UpdateNodePoolRequest(
                        name=path,
                        node_version="-",
                        image_type=NODE_IMAGE_TYPE,
                        labels=container_v1.NodeLabels(labels=dict(a["labels"])),
                        taints=container_v1.NodeTaints(taints=_gke_taints(a["taints"])),
                        resource_labels=container_v1.ResourceLabels(labels=_labels(a["tags"])),
                    )
                ))

        return self._node_pool_result(req)

    def _get_node_pool(self, req: ResourceRequest) -> ProviderResult:
        return self._node_pool_result(req)

    def _delete_node_pool(self, req: ResourceRequest) -> ProviderResult:
        self._wait_operation(self._container.delete_node_pool(name=self._node_pool_path(req)))
        return ProviderResult(identity=req.identity)

    # =========================================================================
    # Add-ons (AddonsConfig)
    # =========================================================================

    @staticmethod
    def _addons_config(name: str, enabled: bool) -> container_v1.AddonsConfig:
        if name == "dns":
            return container_v1.AddonsConfig(
                dns_cache_config=container_v1.DnsCacheConfig(enabled=enabled)
            )
        if name == "cni":
            return container_v1.AddonsConfig(
                network_policy_config=container_v1.NetworkPolicyConfig(disabled=not enabled)
            )
        if name == "csi":
            return container_v1.AddonsConfig(
                gce_persistent_disk_csi_driver_config=container_v1.GcePersistentDiskCsiDriverConfig(
                    enabled=enabled
                )
            )
        raise PermanentProviderError(f"GKE has no add-on '{name}'", code="UnsupportedAddon")

    def _set_addon(self, req: ResourceRequest, enabled: bool) -> ProviderResult:
        cluster_path = self._cluster_path(req.cluster.attributes["name"])
        self._wait_operation(self._container.update_cluster(
            name=cluster_path,
            update=container_v1.ClusterUpdate(
                desired_addons_config=self._addons_config(req.name, enabled)
            ),
        ))
        return ProviderResult(
            identity=f"{cluster_path}#addon/{req.name}",
            outputs={"status": "ENABLED" if enabled else "DISABLED"},
        )

    def _put_addon(self, req: ResourceRequest) -> ProviderResult:
        return self._set_addon(req, enabled=True)

    def _get_addon(self, req: ResourceRequest) -> ProviderResult:
        cluster_path = self._cluster_path(req.cluster.attributes["name"])
        addons = self._container.get_cluster(name=cluster_path).addons_config
        enabled = {
            "dns": addons.dns_cache_config.enabled,
            "cni": not addons.network_policy_config.disabled,
            "csi": addons.gce_persistent_disk_csi_driver_config.enabled,
        }.get(req.name, False)
        if not enabled:
            raise ResourceNotFoundError(f"Add-on '{req.name}' is not enabled on {cluster_path}")
        return ProviderResult(identity=f"{cluster_path}#addon/{req.name}", outputs={"status": "ENABLED"})

    def _delete_addon(self, req: ResourceRequest) -> ProviderResult:
        return self._set_addon(req, enabled=False)

    # =========================================================================
    # Storage (GCS)
    # =========================================================================

    def _bucket_result(self, bucket: storage.Bucket) -> ProviderResult:
        return ProviderResult(
            identity=f"gs://{bucket.name}",
            outputs={"url": f"gs://{bucket.name}", "self_link": bucket.self_link},
        )

    def _put_storage(self, req: ResourceRequest) -> ProviderResult:
        a = req.attributes
        if req.before is None:
            bucket = self._storage.bucket(req.name)
            bucket.storage_class = GCS_STORAGE_CLASSES[a["storage_class"]]
            bucket.versioning_enabled = a["versioning"]
            bucket.labels = _labels(a["tags"])
            try:
                bucket = self._storage.create_bucket(bucket, location=a["region"])
            except gcp_exceptions.Conflict:
                bucket = self._storage.get_bucket(req.name)
            else:
                return self._bucket_result(bucket)
        else:
            bucket = self._storage.get_bucket(req.name)

        bucket.storage_class = GCS_STORAGE_CLASSES[a["storage_class"]]
        bucket.versioning_enabled = a["versioning"]
        bucket.labels = _labels(a["tags"])
        bucket.patch()
        return self._bucket_result(bucket)

    def _get_storage(self, req: ResourceRequest) -> ProviderResult:
        return self._bucket_result(self._storage.get_bucket(req.name))

    def _delete_storage(self, req: ResourceRequest) -> ProviderResult:
        self._storage.get_bucket(req.name).delete()
        return ProviderResult(identity=req.identity)
