"""SSH key pair for worker node access."""

import logging
import os
from typing import Optional

from moodle_deployer.core.state import ResourceHandle, ResourceKind
from moodle_deployer.stages.base import Stage, StageContext

logger = logging.getLogger(__name__)


class KeyPairStage(Stage):
    stage_id = "key_pair"
    description = "EC2 key pair"

    def probe(self, ctx: StageContext) -> Optional[list[ResourceHandle]]:
        name = ctx.plan.cluster.key_pair_name
        key_pair_id = ctx.client.aws.find_key_pair(name)
        if key_pair_id is None:
            return None
        logger.info(f"Using existing key pair {name}")
        return [self._handle(ctx, key_pair_id)]

    def create(self, ctx: StageContext) -> list[ResourceHandle]:
        name = ctx.plan.cluster.key_pair_name
        key_pair_id, material = ctx.client.aws.create_key_pair(name, ctx.plan.tags)

        key_path = ctx.key_path
        key_path.parent.mkdir(parents=True, exist_ok=True)
        if key_path.exists():
            key_path.chmod(0o600)
        key_path.write_text(material)
        os.chmod(key_path, 0o400)
        logger.info(f"Created key pair {name}; private key saved to {key_path}")

        return [self._handle(ctx, key_pair_id)]

    def _handle(self, ctx: StageContext, key_pair_id: str) -> ResourceHandle:
        attributes = {"key_pair_id": key_pair_id}
        if ctx.key_path.exists():
            attributes["pem_path"] = str(ctx.key_path)
        return ResourceHandle(kind=ResourceKind.KEY_PAIR, id=ctx.plan.cluster.key_pair_name, attributes=attributes)
