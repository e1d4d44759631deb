"""metrics-server and the Moodle horizontal pod autoscaler."""

import logging
from typing import Optional

from moodle_deployer.core.state import ResourceHandle, ResourceKind
from moodle_deployer.stages import manifests
from moodle_deployer.stages.base import Stage, StageContext

logger = logging.getLogger(__name__)

METRICS_RELEASE = "metrics-server"
METRICS_NAMESPACE = "kube-system"
METRICS_REPO = ("metrics-server", "https://kubernetes-sigs.github.io/metrics-server/")


class AutoscalingStage(Stage):
    stage_id = "autoscaling"
    description = "Horizontal pod autoscaling"

    def probe(self, ctx: StageContext) -> Optional[list[ResourceHandle]]:
        if not ctx.client.helm.release_exists(METRICS_RELEASE, METRICS_NAMESPACE):
            return None
        if not ctx.client.kubectl.exists("hpa", ctx.plan.scaling.hpa_name, ctx.plan.app.namespace):
            return None
        logger.info("Autoscaler already configured")
        return self._handles(ctx)

    def create(self, ctx: StageContext) -> list[ResourceHandle]:
        client = ctx.client
        ctx.require_handle(ResourceKind.DEPLOYMENT)
        release, hpa = self._handles(ctx)

        client.helm.add_repo(*METRICS_REPO)
        ctx.record(release)
        client.helm.upgrade_install(METRICS_RELEASE, "metrics-server/metrics-server", METRICS_NAMESPACE)
        ctx.wait(
            lambda: client.kubectl.deployment_ready(METRICS_RELEASE, METRICS_NAMESPACE),
            "metrics-server to become available",
            f"{METRICS_NAMESPACE}/{METRICS_RELEASE}",
            ctx.policies.pods,
        )

        ctx.record(hpa)
        client.kubectl.apply([manifests.autoscaler(ctx.plan)])

        scaling = ctx.plan.scaling
        logger.info(f"Pod range {scaling.min_pods}-{scaling.max_pods} at {scaling.target_cpu}% CPU")
        return [release, hpa]

    def _handles(self, ctx: StageContext) -> list[ResourceHandle]:
        return [
            ResourceHandle(
                kind=ResourceKind.HELM_RELEASE,
                id=METRICS_RELEASE,
                attributes={"namespace": METRICS_NAMESPACE},
            ),
            ResourceHandle(
                kind=ResourceKind.HPA,
                id=ctx.plan.scaling.hpa_name,
                attributes={"namespace": ctx.plan.app.namespace},
            ),
        ]
