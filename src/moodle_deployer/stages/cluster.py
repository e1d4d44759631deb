"""EKS cluster with a managed node group, created through eksctl."""

import logging
from typing import Any, Optional

from moodle_deployer.core.errors import ExternalApiError
from moodle_deployer.core.plan import DeploymentPlan
from moodle_deployer.core.state import ResourceHandle, ResourceKind
from moodle_deployer.stages.base import Stage, StageContext, require

logger = logging.getLogger(__name__)

WAITABLE_STATUSES = ("CREATING", "UPDATING", "PENDING")


def render_cluster_config(plan: DeploymentPlan) -> dict[str, Any]:
    """eksctl ClusterConfig for the plan."""
    cluster = plan.cluster
    return {
        "apiVersion": "eksctl.io/v1alpha5",
        "kind": "ClusterConfig",
        "metadata": {
            "name": cluster.name,
            "region": cluster.region,
            "version": cluster.kubernetes_version,
            "tags": dict(plan.tags),
        },
        "iam": {"withOIDC": True},
        "managedNodeGroups": [{
            "name": "workers",
            "instanceType": cluster.node_type,
            "minSize": cluster.min_nodes,
            "maxSize": cluster.max_nodes,
            "desiredCapacity": cluster.min_nodes,
            "privateNetworking": True,
            "ssh": {"allow": True, "publicKeyName": cluster.key_pair_name},
            "iam": {"attachPolicyARNs": list(cluster.node_policy_arns)},
        }],
    }


class ClusterStage(Stage):
    stage_id = "cluster"
    description = "EKS cluster"

    def probe(self, ctx: StageContext) -> Optional[list[ResourceHandle]]:
        name = ctx.plan.cluster.name
        cluster = ctx.client.aws.describe_cluster(name)
        if cluster is None:
            return None

        status = cluster.get("status")
        if status in WAITABLE_STATUSES:
            cluster = self._wait_active(ctx)
        elif status != "ACTIVE":
            raise ExternalApiError("eks.describe_cluster", f"cluster {name} is {status}", code=status)

        logger.info(f"Cluster {name} already exists")
        self._ensure_kubeconfig(ctx)
        return [self._handle(ctx, cluster)]

    def create(self, ctx: StageContext) -> list[ResourceHandle]:
        name = ctx.plan.cluster.name
        ctx.record(ResourceHandle(kind=ResourceKind.CLUSTER, id=name))

        ctx.client.eksctl.create_cluster(render_cluster_config(ctx.plan))
        cluster = self._wait_active(ctx)
        ctx.client.eksctl.write_kubeconfig(name, ctx.kubeconfig_path)

        logger.info(f"Cluster {name} is active")
        return [self._handle(ctx, cluster)]

    def resume(self, ctx: StageContext) -> None:
        self._ensure_kubeconfig(ctx)

    def discover(self, ctx: StageContext) -> list[ResourceHandle]:
        cluster = ctx.client.aws.describe_cluster(ctx.plan.cluster.name)
        if cluster is None:
            return []
        if cluster.get("status") == "ACTIVE":
            self._ensure_kubeconfig(ctx)
        vpc_id = cluster.get("resourcesVpcConfig", {}).get("vpcId")
        attributes = {"status": cluster.get("status", "")}
        if vpc_id:
            attributes["vpc_id"] = vpc_id
        return [ResourceHandle(kind=ResourceKind.CLUSTER, id=ctx.plan.cluster.name, attributes=attributes)]

    def _wait_active(self, ctx: StageContext) -> dict[str, Any]:
        name = ctx.plan.cluster.name

        def active() -> Optional[dict[str, Any]]:
            cluster = ctx.client.aws.describe_cluster(name)
            if cluster and cluster.get("status") == "ACTIVE":
                return cluster
            return None

        return ctx.wait(active, "EKS cluster to become ACTIVE", name, ctx.policies.cluster)

    def _ensure_kubeconfig(self, ctx: StageContext) -> None:
        if not ctx.kubeconfig_path.exists():
            ctx.client.eksctl.write_kubeconfig(ctx.plan.cluster.name, ctx.kubeconfig_path)

    def _handle(self, ctx: StageContext, cluster: dict[str, Any]) -> ResourceHandle:
        vpc_id = require(
            cluster.get("resourcesVpcConfig", {}).get("vpcId"),
            "cluster VPC id",
            f"eks describe-cluster {ctx.plan.cluster.name}",
        )
        return ResourceHandle(
            kind=ResourceKind.CLUSTER,
            id=ctx.plan.cluster.name,
            attributes={
                "vpc_id": vpc_id,
                "endpoint": cluster.get("endpoint", ""),
                "oidc_issuer": cluster.get("identity", {}).get("oidc", {}).get("issuer", ""),
                "kubeconfig": str(ctx.kubeconfig_path),
            },
        )
