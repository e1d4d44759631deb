"""Private S3 bucket for Moodle file storage."""

import logging
from typing import Optional

from moodle_deployer.core.state import ResourceHandle, ResourceKind
from moodle_deployer.stages.base import Stage, StageContext

logger = logging.getLogger(__name__)


class BucketStage(Stage):
    stage_id = "bucket"
    description = "S3 bucket"

    def probe(self, ctx: StageContext) -> Optional[list[ResourceHandle]]:
        name = ctx.plan.storage.bucket_name
        if not ctx.client.aws.bucket_exists(name):
            return None
        logger.info(f"S3 bucket {name} already exists")
        return [self._handle(ctx)]

    def create(self, ctx: StageContext) -> list[ResourceHandle]:
        handle = ctx.record(self._handle(ctx))
        ctx.client.aws.create_bucket(ctx.plan.storage.bucket_name, ctx.plan.tags)
        logger.info(f"Created S3 bucket {handle.id}")
        return [handle]

    def _handle(self, ctx: StageContext) -> ResourceHandle:
        return ResourceHandle(
            kind=ResourceKind.BUCKET,
            id=ctx.plan.storage.bucket_name,
            attributes={"region": ctx.plan.region},
        )
