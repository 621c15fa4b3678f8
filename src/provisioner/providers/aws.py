"""AWS adapter: EKS, IAM (with IRSA trust), VPC and S3 through boto3."""

from __future__ import annotations

import json
import logging
from typing import Any

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
    WaiterError,
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

WAITER_DELAY_SECONDS = 30

TRANSIENT_ERROR_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "ServerException",
    "InternalFailure",
    "InternalError",
    "RequestTimeout",
    "ResourceInUseException",  # an update is already in progress
})

NOT_FOUND_ERROR_CODES = frozenset({
    "ResourceNotFoundException",
    "NoSuchEntity",
    "NoSuchBucket",
    "NotFound",
    "404",
    "InvalidVpcID.NotFound",
    "InvalidSubnetID.NotFound",
})

EKS_ADDON_NAMES = {
    "dns": "coredns",
    "cni": "vpc-cni",
    "csi": "aws-ebs-csi-driver",
    "monitoring": "amazon-cloudwatch-observability",
}

EKS_TAINT_EFFECTS = {
    "NoSchedule": "NO_SCHEDULE",
    "PreferNoSchedule": "PREFER_NO_SCHEDULE",
    "NoExecute": "NO_EXECUTE",
}

TRUSTED_SERVICES = {
    "cluster": "eks.amazonaws.com",
    "node": "ec2.amazonaws.com",
    "workload": "pods.eks.amazonaws.com",
}

S3_TRANSITIONS = {"infrequent": ("STANDARD_IA", 30), "archive": ("GLACIER", 0)}


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def _service_trust_policy(purpose: str) -> str:
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": "Allow",
            "Principal": {"Service": TRUSTED_SERVICES[purpose]},
            "Action": "sts:AssumeRole",
        }],
    })


def _policy_arn(policy: str) -> str:
    return policy if policy.startswith("arn:") else f"arn:aws:iam::aws:policy/{policy}"


def _tag_list(tags: dict[str, str], key: str = "Key", value: str = "Value") -> list[dict[str, str]]:
    return [{key: k, value: v} for k, v in sorted(tags.items())]


def _eks_taints(taints: list[dict[str, str]]) -> list[dict[str, str]]:
    return [
        {"key": t["key"], "value": t.get("value", ""), "effect": EKS_TAINT_EFFECTS[t["effect"]]}
        for t in taints
    ]


class AwsAdapter(ProviderAdapter):
    """Provider adapter for Amazon EKS."""

    cloud = CloudTarget.AWS
    sdk_errors = (ClientError, BotoCoreError)

    def __init__(
        self,
        region: str,
        session: boto3.Session | None = None,
        waiter_delay_seconds: int = WAITER_DELAY_SECONDS,
        waiter_max_attempts: int = 60,
    ) -> None:
        self._region = region
        self._session = session or boto3.Session(region_name=region)
        self._waiter_config = {"Delay": waiter_delay_seconds, "MaxAttempts": waiter_max_attempts}
        self._clients: dict[str, Any] = {}

    def _client(self, service: str) -> Any:
        if service not in self._clients:
            self._clients[service] = self._session.client(service, region_name=self._region)
        return self._clients[service]

    def _wait(self, service: str, waiter: str, **kwargs: Any) -> None:
        self._client(service).get_waiter(waiter).wait(WaiterConfig=self._waiter_config, **kwargs)

    def translate_error(self, error: Exception, node_id: str) -> ProviderError:
        if isinstance(error, ClientError):
            code = _error_code(error)
            message = error.response.get("Error", {}).get("Message") or str(error)
            status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
            if code in NOT_FOUND_ERROR_CODES:
                return ResourceNotFoundError(message, node_id=node_id, code=code)
            if code in TRANSIENT_ERROR_CODES or status >= 500:
                return TransientProviderError(message, node_id=node_id, code=code)
            return PermanentProviderError(message, node_id=node_id, code=code)
        if isinstance(error, WaiterError):
            return TransientProviderError(
                f"Timed out waiting for resource: {error}", node_id=node_id, code="WaiterError"
            )
        if isinstance(error, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
            return TransientProviderError(str(error), node_id=node_id, code=type(error).__name__)
        return PermanentProviderError(str(error), node_id=node_id, code=type(error).__name__)

    # =========================================================================
    # Network (VPC + subnets)
    # =========================================================================

    def _find_vpc(self, name: str) -> str | None:
        response = self._client("ec2").describe_vpcs(
            Filters=[{"Name": "tag:Name", "Values": [name]}]
        )
        vpcs = response.get("Vpcs", [])
        return vpcs[0]["VpcId"] if vpcs else None

    def _subnets_by_name(self, vpc_id: str) -> dict[str, str]:
        response = self._client("ec2").describe_subnets(
            Filters=[{"Name": "vpc-id", "Values": [vpc_id]}]
        )
        result: dict[str, str] = {}
        for subnet in response.get("Subnets", []):
            tags = {t["Key"]: t["Value"] for t in subnet.get("Tags", [])}
            result[tags.get("Name", subnet["SubnetId"])] = subnet["SubnetId"]
        return result

    def _network_result(self, vpc_id: str, subnets: dict[str, str], names: list[str]) -> ProviderResult:
        return ProviderResult(
            identity=vpc_id,
            outputs={"vpc_id": vpc_id, "subnet_ids": [subnets[n] for n in names if n in subnets]},
        )

    def _put_network(self, req: ResourceRequest) -> ProviderResult:
        ec2 = self._client("ec2")
        a = req.attributes
        tags = {**a["tags"], "Name": req.name}

        vpc_id = req.identity or self._find_vpc(req.name)
        if vpc_id is None:
            response = ec2.create_vpc(
                CidrBlock=a["address_space"],
                TagSpecifications=[{"ResourceType": "vpc", "Tags": _tag_list(tags)}],
            )
            vpc_id = response["Vpc"]["VpcId"]
            self._wait("ec2", "vpc_available", VpcIds=[vpc_id])
        else:
            ec2.create_tags(Resources=[vpc_id], Tags=_tag_list(tags))

        existing = self._subnets_by_name(vpc_id)
        desired = [s["name"] for s in a["subnets"]]
        for subnet in a["subnets"]:
            if subnet["name"] in existing:
                continue
            response = ec2.create_subnet(
                VpcId=vpc_id,
                CidrBlock=subnet["cidr"],
                TagSpecifications=[{
                    "ResourceType": "subnet",
                    "Tags": _tag_list({**a["tags"], "Name": subnet["name"]}),
                }],
            )
            existing[subnet["name"]] = response["Subnet"]["SubnetId"]

        for name, subnet_id in list(existing.items()):
            if name not in desired:
                ec2.delete_subnet(SubnetId=subnet_id)
                del existing[name]

        return self._network_result(vpc_id, existing, desired)

    def _get_network(self, req: ResourceRequest) -> ProviderResult:
        vpc_id = req.identity or self._find_vpc(req.name)
        if vpc_id is None:
            raise ResourceNotFoundError(f"VPC '{req.name}' not found")
        self._client("ec2").describe_vpcs(VpcIds=[vpc_id])
        return self._network_result(
            vpc_id, self._subnets_by_name(vpc_id), [s["name"] for s in req.attributes["subnets"]]
        )

    def _delete_network(self, req: ResourceRequest) -> ProviderResult:
        ec2 = self._client("ec2")
        vpc_id = req.identity or self._find_vpc(req.name)
        if vpc_id is None:
            raise ResourceNotFoundError(f"VPC '{req.name}' not found")
        for subnet_id in self._subnets_by_name(vpc_id).values():
            ec2.delete_subnet(SubnetId=subnet_id)
        ec2.delete_vpc(VpcId=vpc_id)
        return ProviderResult(identity=vpc_id)

    # =========================================================================
    # IAM roles and IRSA bindings
    # =========================================================================

    def _sync_role_policies(self, role_name: str, policies: list[str]) -> None:
        iam = self._client("iam")
        attached: set[str] = set()
        for page in iam.get_paginator("list_attached_role_policies").paginate(RoleName=role_name):
            attached.update(p["PolicyArn"] for p in page["AttachedPolicies"])

        desired = {_policy_arn(p) for p in policies}
        for arn in sorted(desired - attached):
            iam.attach_role_policy(RoleName=role_name, PolicyArn=arn)
        for arn in sorted(attached - desired):
            iam.detach_role_policy(RoleName=role_name, PolicyArn=arn)

    def _put_iam_role(self, req: ResourceRequest) -> ProviderResult:
        iam = self._client("iam")
        a = req.attributes
        try:
            role = iam.create_role(
                RoleName=req.name,
                AssumeRolePolicyDocument=_service_trust_policy(a["purpose"]),
                Tags=_tag_list(a["tags"]),
            )["Role"]
        except ClientError as e:
            if _error_code(e) != "EntityAlreadyExists":
                raise
            role = iam.get_role(RoleName=req.name)["Role"]
            iam.tag_role(RoleName=req.name, Tags=_tag_list(a["tags"]))

        self._sync_role_policies(req.name, a["policies"])
        return ProviderResult(identity=role["Arn"], outputs={"arn": role["Arn"], "name": req.name})

    def _get_iam_role(self, req: ResourceRequest) -> ProviderResult:
        role = self._client("iam").get_role(RoleName=req.name)["Role"]
        return ProviderResult(identity=role["Arn"], outputs={"arn": role["Arn"], "name": req.name})

    def _delete_iam_role(self, req: ResourceRequest) -> ProviderResult:
        self._sync_role_policies(req.name, [])
        self._client("iam").delete_role(RoleName=req.name)
        return ProviderResult(identity=req.identity)

    def _ensure_oidc_provider(self, issuer: str) -> str:
        iam = self._client("iam")
        host = issuer.removeprefix("https://")
        for provider in iam.list_open_id_connect_providers().get("OpenIDConnectProviderList", []):
            if provider["Arn"].endswith(host):
                return str(provider["Arn"])
        response = iam.create_open_id_connect_provider(Url=issuer, ClientIDList=["sts.amazonaws.com"])
        return str(response["OpenIDConnectProviderArn"])

    def _binding_subject(self, req: ResourceRequest) -> str:
        a = req.attributes
        return f"system:serviceaccount:{a['namespace']}:{a['service_account']}"

    def _put_iam_binding(self, req: ResourceRequest) -> ProviderResult:
        issuer = str(req.output(CLUSTER_NODE_ID, "oidc_issuer"))
        host = issuer.removeprefix("https://")
        provider_arn = self._ensure_oidc_provider(issuer)
        subject = self._binding_subject(req)
        role_name = req.output(req.attributes["role"], "name")

        trust = {
            "Version": "2012-10-17",
            "Statement": [{
                "Effect": "Allow",
                "Principal": {"Federated": provider_arn},
                "Action": "sts:AssumeRoleWithWebIdentity",
                "Condition": {
                    "StringEquals": {f"{host}:sub": subject, f"{host}:aud": "sts.amazonaws.com"}
                },
            }],
        }
        self._client("iam").update_assume_role_policy(
            RoleName=role_name, PolicyDocument=json.dumps(trust)
        )
        return ProviderResult(
            identity=f"{provider_arn}#{subject}",
            outputs={"issuer": issuer, "subject": subject, "provider_arn": provider_arn},
        )

    def _get_iam_binding(self, req: ResourceRequest) -> ProviderResult:
        role_name = req.output(req.attributes["role"], "name")
        role = self._client("iam").get_role(RoleName=role_name)["Role"]
        subject = self._binding_subject(req)
        if subject not in json.dumps(role.get("AssumeRolePolicyDocument", {})):
            raise ResourceNotFoundError(f"Role '{role_name}' does not trust {subject}")
        return ProviderResult(identity=req.identity, outputs={"subject": subject})

    def _delete_iam_binding(self, req: ResourceRequest) -> ProviderResult:
        role_name = req.output(req.attributes["role"], "name")
        self._client("iam").update_assume_role_policy(
            RoleName=role_name, PolicyDocument=_service_trust_policy("workload")
        )
        return ProviderResult(identity=req.identity)

    # =========================================================================
    # Cluster
    # =========================================================================

    def _cluster_subnets(self, req: ResourceRequest) -> list[str]:
        if req.attributes.get("network") == NETWORK_NODE_ID:
            return list(req.output(NETWORK_NODE_ID, "subnet_ids"))
        return list(req.attributes.get("subnet_ids") or [])

    def _describe_cluster(self, name: str) -> ProviderResult:
        cluster = self._client("eks").describe_cluster(name=name)["cluster"]
        vpc_config = cluster.get("resourcesVpcConfig", {})
        return ProviderResult(
            identity=cluster["arn"],
            outputs={
                "arn": cluster["arn"],
                "endpoint": cluster.get("endpoint"),
                "oidc_issuer": cluster.get("identity", {}).get("oidc", {}).get("issuer"),
                "certificate_authority": cluster.get("certificateAuthority", {}).get("data"),
                "status": cluster.get("status"),
                "version": cluster.get("version"),
                "subnet_ids": list(vpc_config.get("subnetIds", [])),
            },
        )

    def _put_cluster(self, req: ResourceRequest) -> ProviderResult:
        eks = self._client("eks")
        a = req.attributes

        if req.before is None:
            role_arn = req.resolve(a.get("role"))
            if role_arn is None:
                raise PermanentProviderError("EKS clusters require a cluster role", code="MissingRole")
            kwargs: dict[str, Any] = {
                "name": req.name,
                "version": a["kubernetes_version"],
                "roleArn": role_arn,
                "resourcesVpcConfig": {
                    "subnetIds": self._cluster_subnets(req),
                    "endpointPublicAccess": a["endpoint_public_access"],
                    "endpointPrivateAccess": a["endpoint_private_access"],
                },
                "tags": dict(a["tags"]),
            }
            if a.get("service_cidr"):
                kwargs["kubernetesNetworkConfig"] = {"serviceIpv4Cidr": a["service_cidr"]}
            try:
                eks.create_cluster(**kwargs)
            except ClientError as e:
                if _error_code(e) != "ResourceInUseException":
                    raise
                logger.info("EKS cluster already exists, adopting", extra={"cluster": req.name})
        else:
            if req.changed("role", "network", "subnet_ids", "pod_cidr", "service_cidr", "region"):
                raise PermanentProviderError(
                    f"Fields {list(req.changed_fields)} of EKS cluster '{req.name}' cannot change in place",
                    code="ImmutableField",
                )
            if req.changed("kubernetes_version"):
                eks.update_cluster_version(name=req.name, version=a["kubernetes_version"])
                self._wait("eks", "cluster_active", name=req.name)
            if req.changed("endpoint_public_access", "endpoint_private_access"):
                eks.update_cluster_config(
                    name=req.name,
                    resourcesVpcConfig={
                        "endpointPublicAccess": a["endpoint_public_access"],
                        "endpointPrivateAccess": a["endpoint_private_access"],
                    },
                )
            if req.changed("tags") and req.identity:
                eks.tag_resource(resourceArn=req.identity, tags=dict(a["tags"]))

        self._wait("eks", "cluster_active", name=req.name)
        return self._describe_cluster(req.name)

    def _get_cluster(self, req: ResourceRequest) -> ProviderResult:
        return self._describe_cluster(req.name)

    def _delete_cluster(self, req: ResourceRequest) -> ProviderResult:
        self._client("eks").delete_cluster(name=req.name)
        self._wait("eks", "cluster_deleted", name=req.name)
        return ProviderResult(identity=req.identity)

    # =========================================================================
    # Node groups
    # =========================================================================

    def _cluster_name(self, req: ResourceRequest) -> str:
        return str(req.cluster.attributes["name"])

    def _describe_nodegroup(self, cluster_name: str, name: str) -> ProviderResult:
        group = self._client("eks").describe_nodegroup(
            clusterName=cluster_name, nodegroupName=name
        )["nodegroup"]
        return ProviderResult(
            identity=group["nodegroupArn"],
            outputs={
                "arn": group["nodegroupArn"],
                "status": group.get("status"),
                "current_count": group.get("scalingConfig", {}).get("desiredSize"),
            },
        )

    def _put_node_pool(self, req: ResourceRequest) -> ProviderResult:
        eks = self._client("eks")
        a = req.attributes
        cluster_name = self._cluster_name(req)
        scaling = {
            "minSize": a["min_count"],
            "maxSize": a["max_count"],
            "desiredSize": a["desired_count"],
        }

        if req.before is None:
            role_arn = req.resolve(a.get("role"))
            if role_arn is None:
                raise PermanentProviderError("EKS node groups require a node role", code="MissingRole")
            try:
                eks.create_nodegroup(
                    clusterName=cluster_name,
                    nodegroupName=req.name,
                    scalingConfig=scaling,
                    subnets=list(req.output(CLUSTER_NODE_ID, "subnet_ids")),
                    instanceTypes=[a["instance_type"]],
                    diskSize=a["disk_size_gb"],
                    nodeRole=role_arn,
                    labels=dict(a["labels"]),
                    taints=_eks_taints(a["taints"]),
                    tags=dict(a["tags"]),
                )
            except ClientError as e:
                if _error_code(e) != "ResourceInUseException":
                    raise
                logger.info(
                    "EKS node group already exists, adopting",
                    extra={"cluster": cluster_name, "node_pool": req.name},
                )
        else:
            if req.changed("instance_type", "disk_size_gb", "role"):
                raise PermanentProviderError(
                    f"Node group '{req.name}' must be replaced to change "
                    f"{[f for f in req.changed_fields if f in ('instance_type', 'disk_size_gb', 'role')]}",
                    code="ImmutableField",
                )
            before = req.before
            update: dict[str, Any] = {}
            if req.changed("min_count", "max_count", "desired_count", "enable_autoscaling"):
                update["scalingConfig"] = scaling
            if req.changed("labels"):
                update["labels"] = {
                    "addOrUpdateLabels": dict(a["labels"]),
                    "removeLabels": sorted(set(before.get("labels") or {}) - set(a["labels"])),
                }
            if req.changed("taints"):
                desired_keys = {t["key"] for t in a["taints"]}
                update["taints"] = {
                    "addOrUpdateTaints": _eks_taints(a["taints"]),
                    "removeTaints": _eks_taints(
                        [t for t in before.get("taints") or [] if t["key"] not in desired_keys]
                    ),
                }
            if update:
                eks.update_nodegroup_config(clusterName=cluster_name, nodegroupName=req.name, **update)
            if req.changed("tags") and req.identity:
                eks.tag_resource(resourceArn=req.identity, tags=dict(a["tags"]))

        self._wait("eks", "nodegroup_active", clusterName=cluster_name, nodegroupName=req.name)
        return self._describe_nodegroup(cluster_name, req.name)

    def _get_node_pool(self, req: ResourceRequest) -> ProviderResult:
        return self._describe_nodegroup(self._cluster_name(req), req.name)

    def _delete_node_pool(self, req: ResourceRequest) -> ProviderResult:
        cluster_name = self._cluster_name(req)
        self._client("eks").delete_nodegroup(clusterName=cluster_name, nodegroupName=req.name)
        self._wait("eks", "nodegroup_deleted", clusterName=cluster_name, nodegroupName=req.name)
        return ProviderResult(identity=req.identity)

    # =========================================================================
    # Add-ons
    # =========================================================================

    def _describe_addon(self, cluster_name: str, addon_name: str) -> ProviderResult:
        addon = self._client("eks").describe_addon(
            clusterName=cluster_name, addonName=addon_name
        )["addon"]
        return ProviderResult(
            identity=addon["addonArn"],
            outputs={
                "arn": addon["addonArn"],
                "resolved_version": addon.get("addonVersion"),
                "status": addon.get("status"),
            },
        )

    def _put_addon(self, req: ResourceRequest) -> ProviderResult:
        eks = self._client("eks")
        a = req.attributes
        cluster_name = self._cluster_name(req)
        addon_name = EKS_ADDON_NAMES[req.name]

        kwargs: dict[str, Any] = {
            "clusterName": cluster_name,
            "addonName": addon_name,
            "resolveConflicts": "OVERWRITE",
        }
        if a.get("version"):
            kwargs["addonVersion"] = a["version"]
        role_arn = req.resolve(a.get("role"))
        if role_arn:
            kwargs["serviceAccountRoleArn"] = role_arn

        if req.before is None:
            try:
                eks.create_addon(**kwargs)
            except ClientError as e:
                if _error_code(e) != "ResourceInUseException":
                    raise
                eks.update_addon(**kwargs)
        else:
            eks.update_addon(**kwargs)

        self._wait("eks", "addon_active", clusterName=cluster_name, addonName=addon_name)
        return self._describe_addon(cluster_name, addon_name)

    def _get_addon(self, req: ResourceRequest) -> ProviderResult:
        return self._describe_addon(self._cluster_name(req), EKS_ADDON_NAMES[req.name])

    def _delete_addon(self, req: ResourceRequest) -> ProviderResult:
        cluster_name = self._cluster_name(req)
        addon_name = EKS_ADDON_NAMES[req.name]
        self._client("eks").delete_addon(clusterName=cluster_name, addonName=addon_name)
        self._wait("eks", "addon_deleted", clusterName=cluster_name, addonName=addon_name)
        return ProviderResult(identity=req.identity)

    # =========================================================================
    # Storage (S3)
    # =========================================================================

    def _put_storage(self, req: ResourceRequest) -> ProviderResult:
        s3 = self._client("s3")
        a = req.attributes
        bucket = req.name

        if req.before is None:
            kwargs: dict[str, Any] = {"Bucket": bucket}
            # us-east-1 rejects an explicit location constraint
            if a["region"] != "us-east-1":
                kwargs["CreateBucketConfiguration"] = {"LocationConstraint": a["region"]}
            try:
                s3.create_bucket(**kwargs)
            except ClientError as e:
                if _error_code(e) != "BucketAlreadyOwnedByYou":
                    raise

        if req.before is None or req.changed("versioning"):
            s3.put_bucket_versioning(
                Bucket=bucket,
                VersioningConfiguration={"Status": "Enabled" if a["versioning"] else "Suspended"},
            )
        if req.before is None or req.changed("tags"):
            s3.put_bucket_tagging(Bucket=bucket, Tagging={"TagSet": _tag_list(a["tags"])})
        if req.before is None or req.changed("storage_class"):
            transition = S3_TRANSITIONS.get(a["storage_class"])
            if transition is None:
                if req.before is not None:
                    s3.delete_bucket_lifecycle(Bucket=bucket)
            else:
                storage_class, days = transition
                s3.put_bucket_lifecycle_configuration(
                    Bucket=bucket,
                    LifecycleConfiguration={"Rules": [{
                        "ID": "storage-class",
                        "Status": "Enabled",
                        "Filter": {"Prefix": ""},
                        "Transitions": [{"Days": days, "StorageClass": storage_class}],
                    }]},
                )

        return self._get_storage(req)

    def _get_storage(self, req: ResourceRequest) -> ProviderResult:
        self._client("s3").head_bucket(Bucket=req.name)
        arn = f"arn:aws:s3:::{req.name}"
        return ProviderResult(identity=arn, outputs={"arn": arn, "bucket": req.name})

    def _delete_storage(self, req: ResourceRequest) -> ProviderResult:
        self._client("s3").delete_bucket(Bucket=req.name)
        return ProviderResult(identity=req.identity)
