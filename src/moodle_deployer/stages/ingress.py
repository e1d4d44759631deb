"""AWS Load Balancer Controller and the Moodle ingress."""

import logging
from typing import Optional

from moodle_deployer.core.state import ResourceHandle, ResourceKind
from moodle_deployer.stages import manifests
from moodle_deployer.stages.base import Stage, StageContext
from moodle_deployer.stages.network import cluster_vpc_id

logger = logging.getLogger(__name__)

CONTROLLER_RELEASE = "aws-load-balancer-controller"
CONTROLLER_NAMESPACE = "kube-system"
EKS_CHARTS_REPO = ("eks", "https://aws.github.io/eks-charts")


class IngressStage(Stage):
    stage_id = "ingress"
    description = "ALB ingress"

    def probe(self, ctx: StageContext) -> Optional[list[ResourceHandle]]:
        if not ctx.client.helm.release_exists(CONTROLLER_RELEASE, CONTROLLER_NAMESPACE):
            return None
        hostname = ctx.client.kubectl.ingress_hostname(ctx.plan.app.ingress_name, ctx.plan.app.namespace)
        if not hostname:
            return None
        logger.info(f"Ingress already served by {hostname}")
        return [self._release_handle(), self._ingress_handle(ctx, hostname)]

    def create(self, ctx: StageContext) -> list[ResourceHandle]:
        client = ctx.client
        app = ctx.plan.app
        cluster_name = ctx.plan.cluster.name
        vpc_id = cluster_vpc_id(ctx)

        client.eksctl.associate_oidc_provider(cluster_name)
        client.helm.add_repo(*EKS_CHARTS_REPO)
        ctx.record(self._release_handle())
        client.helm.upgrade_install(
            CONTROLLER_RELEASE,
            "eks/aws-load-balancer-controller",
            CONTROLLER_NAMESPACE,
            values={
                "clusterName": cluster_name,
                "region": ctx.plan.region,
                "vpcId": vpc_id,
                "serviceAccount.create": "true",
            },
        )

        ctx.record(self._ingress_handle(ctx, ""))
        client.kubectl.apply([manifests.ingress(ctx.plan)])

        hostname = ctx.wait(
            lambda: client.kubectl.ingress_hostname(app.ingress_name, app.namespace),
            "ALB hostname on ingress",
            f"{app.namespace}/{app.ingress_name}",
            ctx.policies.load_balancer,
        )
        logger.info(f"ALB DNS: {hostname}")
        return [self._release_handle(), self._ingress_handle(ctx, hostname)]

    def _release_handle(self) -> ResourceHandle:
        return ResourceHandle(
            kind=ResourceKind.HELM_RELEASE,
            id=CONTROLLER_RELEASE,
            attributes={"namespace": CONTROLLER_NAMESPACE},
        )

    def _ingress_handle(self, ctx: StageContext, hostname: str) -> ResourceHandle:
        attributes = {"namespace": ctx.plan.app.namespace}
        if hostname:
            attributes["hostname"] = hostname
        return ResourceHandle(kind=ResourceKind.INGRESS, id=ctx.plan.app.ingress_name, attributes=attributes)
