"""Moodle workload: IRSA service account, DB secret, deployment and service."""

import json
import logging
from typing import Optional

from moodle_deployer.core.state import ResourceHandle, ResourceKind
from moodle_deployer.stages import manifests
from moodle_deployer.stages.base import Stage, StageContext, require

logger = logging.getLogger(__name__)

S3_POLICY_ARN = "arn:aws:iam::aws:policy/AmazonS3FullAccess"


class ApplicationStage(Stage):
    stage_id = "application"
    description = "Moodle application"

    def probe(self, ctx: StageContext) -> Optional[list[ResourceHandle]]:
        app = ctx.plan.app
        kubectl = ctx.client.kubectl

        if not kubectl.exists("serviceaccount", app.service_account_name, app.namespace):
            return None
        if not kubectl.exists("secret", app.db_secret_name, app.namespace):
            return None
        if not kubectl.exists("service", app.service_name, app.namespace):
            return None
        if not kubectl.deployment_ready(app.name, app.namespace):
            return None

        logger.info(f"Moodle deployment {app.namespace}/{app.name} already running")
        return self._handles(ctx)

    def create(self, ctx: StageContext) -> list[ResourceHandle]:
        app = ctx.plan.app
        client = ctx.client

        database = ctx.require_handle(ResourceKind.DB_INSTANCE, "endpoint")
        credential = ctx.require_handle(ResourceKind.CREDENTIAL)
        ctx.require_handle(ResourceKind.BUCKET)
        ctx.require_handle(ResourceKind.PVC)

        stored = require(client.aws.get_secret(credential.id), "database credential", credential.id)
        creds = json.loads(stored)

        handles = self._handles(ctx)
        by_kind = {h.kind: h for h in handles}

        client.eksctl.create_iam_service_account(
            ctx.plan.cluster.name, app.service_account_name, app.namespace, [S3_POLICY_ARN]
        )
        ctx.record(by_kind[ResourceKind.SERVICE_ACCOUNT])

        client.kubectl.apply([manifests.db_secret(ctx.plan, creds["username"], creds["password"])])
        ctx.record(by_kind[ResourceKind.SECRET])

        ctx.record(by_kind[ResourceKind.DEPLOYMENT])
        ctx.record(by_kind[ResourceKind.SERVICE])
        client.kubectl.apply([
            manifests.deployment(ctx.plan, database.attr("endpoint"), database.attr("port", "5432")),
            manifests.service(ctx.plan),
        ])

        ctx.wait(
            lambda: client.kubectl.deployment_ready(app.name, app.namespace),
            "Moodle pods to become ready",
            f"{app.namespace}/{app.name}",
            ctx.policies.pods,
        )
        return handles

    def _handles(self, ctx: StageContext) -> list[ResourceHandle]:
        app = ctx.plan.app
        ns = {"namespace": app.namespace}
        return [
            ResourceHandle(
                kind=ResourceKind.SERVICE_ACCOUNT,
                id=app.service_account_name,
                attributes={**ns, "cluster": ctx.plan.cluster.name},
            ),
            ResourceHandle(kind=ResourceKind.SECRET, id=app.db_secret_name, attributes=ns),
            ResourceHandle(kind=ResourceKind.DEPLOYMENT, id=app.name, attributes=ns),
            ResourceHandle(kind=ResourceKind.SERVICE, id=app.service_name, attributes=ns),
        ]
