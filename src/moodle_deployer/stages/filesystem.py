"""EFS filesystem, mount targets and the Kubernetes storage class and claim."""

import logging
from typing import Any, Optional

from moodle_deployer.core.errors import ResourceConflict
from moodle_deployer.core.state import ResourceHandle, ResourceKind
from moodle_deployer.stages import manifests
from moodle_deployer.stages.base import Stage, StageContext, require
from moodle_deployer.stages.network import cluster_vpc_id, node_security_group, private_subnets

logger = logging.getLogger(__name__)


class FilesystemStage(Stage):
    stage_id = "filesystem"
    description = "EFS storage"

    def probe(self, ctx: StageContext) -> Optional[list[ResourceHandle]]:
        aws = ctx.client.aws
        filesystem = aws.find_filesystem(ctx.plan.storage.efs_creation_token)
        if filesystem is None or filesystem.get("LifeCycleState") != "available":
            return None

        filesystem_id = filesystem["FileSystemId"]
        subnet_ids = set(aws.private_subnet_ids(cluster_vpc_id(ctx)))
        targets = [t for t in aws.mount_targets(filesystem_id) if t.get("LifeCycleState") == "available"]
        if not subnet_ids or not subnet_ids <= {t["SubnetId"] for t in targets}:
            return None

        kubectl = ctx.client.kubectl
        if not kubectl.exists("storageclass", ctx.plan.storage.storage_class_name):
            return None
        if not kubectl.exists("pvc", ctx.plan.storage.claim_name, ctx.plan.app.namespace):
            return None

        logger.info(f"EFS filesystem {filesystem_id} already provisioned")
        return self._handles(ctx, filesystem_id, targets)

    def create(self, ctx: StageContext) -> list[ResourceHandle]:
        aws = ctx.client.aws
        storage = ctx.plan.storage

        filesystem = aws.find_filesystem(storage.efs_creation_token)
        if filesystem is None:
            try:
                filesystem = aws.create_filesystem(storage.efs_creation_token, storage.efs_name, ctx.plan.tags)
            except ResourceConflict:
                filesystem = require(aws.find_filesystem(storage.efs_creation_token), "EFS filesystem")
        filesystem_id = filesystem["FileSystemId"]
        ctx.record(self._filesystem_handle(ctx, filesystem_id))

        ctx.wait(
            lambda: (aws.describe_filesystem(filesystem_id) or {}).get("LifeCycleState") == "available",
            "EFS filesystem to become available",
            filesystem_id,
            ctx.policies.filesystem,
        )

        vpc_id = cluster_vpc_id(ctx)
        subnet_ids = private_subnets(ctx, vpc_id)
        security_group = node_security_group(ctx, vpc_id)

        covered = {t["SubnetId"] for t in aws.mount_targets(filesystem_id)}
        for subnet_id in subnet_ids:
            if subnet_id in covered:
                continue
            try:
                target_id = aws.create_mount_target(filesystem_id, subnet_id, security_group)
            except ResourceConflict:
                logger.debug(f"Mount target for {subnet_id} already exists")
                continue
            ctx.record(ResourceHandle(
                kind=ResourceKind.MOUNT_TARGET,
                id=target_id,
                attributes={"filesystem_id": filesystem_id, "subnet_id": subnet_id},
            ))

        targets = ctx.wait(
            lambda: self._available_targets(ctx, filesystem_id, subnet_ids),
            "EFS mount targets to become available",
            filesystem_id,
            ctx.policies.filesystem,
        )

        kubectl = ctx.client.kubectl
        kubectl.apply_kustomize(manifests.EFS_CSI_DRIVER_KUSTOMIZATION)
        kubectl.apply([manifests.storage_class(ctx.plan, filesystem_id), manifests.claim(ctx.plan)])

        return self._handles(ctx, filesystem_id, targets)

    def discover(self, ctx: StageContext) -> list[ResourceHandle]:
        aws = ctx.client.aws
        filesystem = aws.find_filesystem(ctx.plan.storage.efs_creation_token)
        if filesystem is None:
            return []
        filesystem_id = filesystem["FileSystemId"]
        handles = [self._filesystem_handle(ctx, filesystem_id)] + [
            ResourceHandle(
                kind=ResourceKind.MOUNT_TARGET,
                id=t["MountTargetId"],
                attributes={"filesystem_id": filesystem_id, "subnet_id": t["SubnetId"]},
            )
            for t in aws.mount_targets(filesystem_id)
        ]

        cluster = ctx.handle(ResourceKind.CLUSTER)
        if cluster is not None and cluster.attr("status") == "ACTIVE":
            storage = ctx.plan.storage
            namespace = ctx.plan.app.namespace
            kubectl = ctx.client.kubectl
            if kubectl.exists("storageclass", storage.storage_class_name):
                handles.append(ResourceHandle(kind=ResourceKind.STORAGE_CLASS, id=storage.storage_class_name))
            if kubectl.exists("pvc", storage.claim_name, namespace):
                handles.append(ResourceHandle(
                    kind=ResourceKind.PVC, id=storage.claim_name, attributes={"namespace": namespace}
                ))
        return handles

    def _available_targets(
        self, ctx: StageContext, filesystem_id: str, subnet_ids: list[str]
    ) -> Optional[list[dict[str, Any]]]:
        targets = ctx.client.aws.mount_targets(filesystem_id)
        ready = [t for t in targets if t.get("LifeCycleState") == "available"]
        if set(subnet_ids) <= {t["SubnetId"] for t in ready}:
            return ready
        return None

    def _filesystem_handle(self, ctx: StageContext, filesystem_id: str) -> ResourceHandle:
        return ResourceHandle(
            kind=ResourceKind.FILESYSTEM,
            id=filesystem_id,
            attributes={
                "dns_name": f"{filesystem_id}.efs.{ctx.plan.region}.amazonaws.com",
                "creation_token": ctx.plan.storage.efs_creation_token,
            },
        )

    def _handles(self, ctx: StageContext, filesystem_id: str, targets: list[dict[str, Any]]) -> list[ResourceHandle]:
        namespace = ctx.plan.app.namespace
        handles = [self._filesystem_handle(ctx, filesystem_id)]
        handles.extend(
            ResourceHandle(
                kind=ResourceKind.MOUNT_TARGET,
                id=t["MountTargetId"],
                attributes={"filesystem_id": filesystem_id, "subnet_id": t["SubnetId"]},
            )
            for t in sorted(targets, key=lambda t: t["SubnetId"])
        )
        handles.append(ResourceHandle(kind=ResourceKind.STORAGE_CLASS, id=ctx.plan.storage.storage_class_name))
        handles.append(ResourceHandle(
            kind=ResourceKind.PVC, id=ctx.plan.storage.claim_name, attributes={"namespace": namespace}
        ))
        return handles
