"""Route 53 alias record pointing the Moodle hostname at the ALB."""

import logging
from typing import Optional

from moodle_deployer.core.preflight import resolve_hosted_zone
from moodle_deployer.core.state import ResourceHandle, ResourceKind
from moodle_deployer.stages.base import Stage, StageContext, require

logger = logging.getLogger(__name__)


def normalize_dns(name: str) -> str:
    name = name.lower().rstrip(".")
    return name[len("dualstack."):] if name.startswith("dualstack.") else name


def record_handle(zone_id: str, name: str, record_type: str, alias_dns_name: str, alias_zone_id: str) -> ResourceHandle:
    """Handle carrying the exact tuple needed to delete the record later."""
    return ResourceHandle(
        kind=ResourceKind.DNS_RECORD,
        id=name,
        attributes={
            "zone_id": zone_id,
            "name": name,
            "type": record_type,
            "alias_dns_name": alias_dns_name,
            "alias_zone_id": alias_zone_id,
        },
    )


class DnsStage(Stage):
    stage_id = "dns"
    description = "Route 53 record"

    def probe(self, ctx: StageContext) -> Optional[list[ResourceHandle]]:
        ingress = ctx.handle(ResourceKind.INGRESS)
        if ingress is None or not ingress.attr("hostname"):
            return None

        zone_id = self._zone_id(ctx)
        dns = ctx.plan.dns
        record = ctx.client.aws.find_record(zone_id, dns.record_name, dns.record_type)
        if record is None or "AliasTarget" not in record:
            return None

        target = record["AliasTarget"]
        if normalize_dns(target["DNSName"]) != normalize_dns(ingress.attr("hostname")):
            logger.info(f"{dns.record_name} points at {target['DNSName']}, will be updated")
            return None

        logger.info(f"{dns.record_name} already aliases {ingress.attr('hostname')}")
        return [record_handle(zone_id, dns.record_name, dns.record_type, target["DNSName"], target["HostedZoneId"])]

    def create(self, ctx: StageContext) -> list[ResourceHandle]:
        aws = ctx.client.aws
        dns = ctx.plan.dns

        hostname = ctx.require_handle(ResourceKind.INGRESS, "hostname").attr("hostname")
        zone_id = self._zone_id(ctx)
        alb_zone_id = require(aws.load_balancer_zone_id(hostname), "ALB canonical hosted zone", hostname)

        handle = ctx.record(record_handle(zone_id, dns.record_name, dns.record_type, hostname, alb_zone_id))
        change_id = aws.change_alias_record("UPSERT", zone_id, dns.record_name, dns.record_type, hostname, alb_zone_id)
        ctx.wait(
            lambda: aws.change_status(change_id) == "INSYNC",
            "Route 53 change to propagate",
            change_id,
            ctx.policies.dns,
        )

        logger.info(f"Route 53: {dns.record_name} -> {hostname}")
        return [handle]

    def _zone_id(self, ctx: StageContext) -> str:
        return resolve_hosted_zone(ctx.client.aws, ctx.plan)
