"""Provisioning stages in dependency order."""

from moodle_deployer.stages.application import ApplicationStage
from moodle_deployer.stages.autoscaling import AutoscalingStage
from moodle_deployer.stages.base import PollPolicies, Stage, StageContext
from moodle_deployer.stages.bucket import BucketStage
from moodle_deployer.stages.cluster import ClusterStage
from moodle_deployer.stages.database import DatabaseStage
from moodle_deployer.stages.dns import DnsStage
from moodle_deployer.stages.filesystem import FilesystemStage
from moodle_deployer.stages.ingress import IngressStage
from moodle_deployer.stages.key_pair import KeyPairStage


def default_pipeline() -> list[Stage]:
    """Stages in the order they must run."""
    return [
        KeyPairStage(),
        ClusterStage(),
        DatabaseStage(),
        FilesystemStage(),
        BucketStage(),
        ApplicationStage(),
        IngressStage(),
        AutoscalingStage(),
        DnsStage(),
    ]


STAGE_IDS = [stage.stage_id for stage in default_pipeline()]

__all__ = [
    "ApplicationStage",
    "AutoscalingStage",
    "BucketStage",
    "ClusterStage",
    "DatabaseStage",
    "DnsStage",
    "FilesystemStage",
    "IngressStage",
    "KeyPairStage",
    "PollPolicies",
    "STAGE_IDS",
    "Stage",
    "StageContext",
    "default_pipeline",
]
