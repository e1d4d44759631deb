"""Lookups of the cluster network that later stages build into."""

from moodle_deployer.core.state import ResourceKind
from moodle_deployer.stages.base import StageContext, require


def cluster_vpc_id(ctx: StageContext) -> str:
    return ctx.require_handle(ResourceKind.CLUSTER, "vpc_id").attr("vpc_id")


def private_subnets(ctx: StageContext, vpc_id: str) -> list[str]:
    return require(
        ctx.client.aws.private_subnet_ids(vpc_id),
        "private subnets",
        f"no SubnetPrivate* subnets in {vpc_id}",
    )


def vpc_cidr(ctx: StageContext, vpc_id: str) -> str:
    return require(ctx.client.aws.vpc_cidr(vpc_id), "VPC CIDR block", vpc_id)


def node_security_group(ctx: StageContext, vpc_id: str) -> str:
    return require(
        ctx.client.aws.node_security_group(vpc_id),
        "node security group",
        f"no ClusterSharedNodeSecurityGroup in {vpc_id}",
    )
