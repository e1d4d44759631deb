"""Checks run before any resource is touched."""

import logging
import shutil
from typing import Callable, Iterable, Optional

from moodle_deployer.clients.aws import AwsResourceClient
from moodle_deployer.core.errors import DependencyMissing
from moodle_deployer.core.plan import DeploymentPlan

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ("eksctl", "kubectl", "helm")


def check_tools(
    tools: Iterable[str] = REQUIRED_TOOLS,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> dict[str, str]:
    """
    Verify the command line tools are installed.

    Returns:
        Mapping of tool name to its resolved path.

    Raises:
        DependencyMissing: Listing every tool not found on PATH.
    """
    found = {}
    missing = []
    for tool in tools:
        path = which(tool)
        if path:
            found[tool] = path
        else:
            missing.append(tool)

    if missing:
        raise DependencyMissing(", ".join(missing), "install it and make sure it is on PATH")

    for tool, path in found.items():
        logger.debug(f"{tool}: {path}")
    return found


def resolve_identity(aws: AwsResourceClient) -> dict[str, str]:
    """Look up the AWS account and principal the deployment will run as."""
    identity = aws.caller_identity()
    logger.info(f"AWS account {identity['account']} as {identity['arn']}")
    return identity


def resolve_hosted_zone(aws: AwsResourceClient, plan: DeploymentPlan) -> str:
    """
    Find the Route 53 hosted zone the site record goes into.

    A configured zone id is used as given; otherwise the zone is looked up by
    the plan's domain name.

    Raises:
        DependencyMissing: If no public hosted zone matches the domain.
    """
    dns = plan.dns
    if dns.hosted_zone_id:
        return dns.hosted_zone_id
    zone_id = aws.find_hosted_zone_id(dns.domain_name)
    if not zone_id:
        raise DependencyMissing("Route 53 hosted zone", dns.domain_name)
    logger.info(f"Hosted zone {zone_id} for {dns.domain_name}")
    return zone_id
