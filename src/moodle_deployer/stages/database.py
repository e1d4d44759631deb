"""RDS PostgreSQL instance for Moodle.

The master password is generated once and kept in Secrets Manager. It is
never read back from an RDS describe call.
"""

import json
import logging
import secrets
from typing import Any, Optional

from moodle_deployer.core.errors import DependencyMissing, ResourceConflict
from moodle_deployer.core.state import ResourceHandle, ResourceKind
from moodle_deployer.stages.base import Stage, StageContext, require
from moodle_deployer.stages.network import cluster_vpc_id, private_subnets, vpc_cidr

logger = logging.getLogger(__name__)


def generate_password() -> str:
    # token_urlsafe avoids the characters RDS rejects ('/', '@', '"', ' ')
    return secrets.token_urlsafe(24)


class DatabaseStage(Stage):
    stage_id = "database"
    description = "RDS database"

    def probe(self, ctx: StageContext) -> Optional[list[ResourceHandle]]:
        spec = ctx.plan.database
        instance = ctx.client.aws.describe_db_instance(spec.identifier)
        if instance is None or instance.get("DBInstanceStatus") != "available":
            return None

        if ctx.client.aws.get_secret(spec.credential_secret_name) is None:
            raise DependencyMissing(
                "database credential",
                f"{spec.identifier} exists but secret {spec.credential_secret_name} is missing",
            )

        logger.info(f"RDS instance {spec.identifier} already available")
        handles = []
        for group in instance.get("VpcSecurityGroups", []):
            handles.append(ResourceHandle(
                kind=ResourceKind.SECURITY_GROUP,
                id=group["VpcSecurityGroupId"],
                attributes={"name": spec.security_group_name},
            ))
        subnet_group = instance.get("DBSubnetGroup", {}).get("DBSubnetGroupName")
        if subnet_group:
            handles.append(ResourceHandle(kind=ResourceKind.DB_SUBNET_GROUP, id=subnet_group))
        handles.append(self._credential_handle(ctx))
        handles.append(self._instance_handle(ctx, instance))
        return handles

    def create(self, ctx: StageContext) -> list[ResourceHandle]:
        spec = ctx.plan.database
        aws = ctx.client.aws

        vpc_id = cluster_vpc_id(ctx)
        cidr = vpc_cidr(ctx, vpc_id)
        subnet_ids = private_subnets(ctx, vpc_id)

        group_id = aws.find_security_group(vpc_id, spec.security_group_name)
        if group_id is None:
            try:
                group_id = aws.create_security_group(
                    vpc_id, spec.security_group_name, "Moodle DB Security Group", ctx.plan.tags
                )
            except ResourceConflict:
                group_id = require(aws.find_security_group(vpc_id, spec.security_group_name), "DB security group")
        ctx.record(ResourceHandle(
            kind=ResourceKind.SECURITY_GROUP, id=group_id, attributes={"name": spec.security_group_name}
        ))
        aws.allow_tcp_ingress(group_id, spec.port, cidr)

        if not aws.db_subnet_group_exists(spec.subnet_group_name):
            try:
                aws.create_db_subnet_group(spec.subnet_group_name, subnet_ids, ctx.plan.tags)
            except ResourceConflict:
                logger.debug(f"DB subnet group {spec.subnet_group_name} appeared concurrently")
        ctx.record(ResourceHandle(kind=ResourceKind.DB_SUBNET_GROUP, id=spec.subnet_group_name))

        password = self._ensure_credential(ctx)
        ctx.record(self._credential_handle(ctx))

        if aws.describe_db_instance(spec.identifier) is None:
            ctx.record(ResourceHandle(kind=ResourceKind.DB_INSTANCE, id=spec.identifier))
            logger.info(f"Creating RDS instance {spec.identifier} (about 10-15 minutes)")
            aws.create_db_instance(self._create_params(ctx, group_id, password))

        instance = self._wait_available(ctx)
        handles = ctx.ledger.stage(self.stage_id).handles
        return [h for h in handles if h.kind != ResourceKind.DB_INSTANCE] + [self._instance_handle(ctx, instance)]

    def discover(self, ctx: StageContext) -> list[ResourceHandle]:
        spec = ctx.plan.database
        aws = ctx.client.aws
        handles = []

        cluster = ctx.handle(ResourceKind.CLUSTER)
        if cluster is not None and cluster.attr("vpc_id"):
            group_id = aws.find_security_group(cluster.attr("vpc_id"), spec.security_group_name)
            if group_id:
                handles.append(ResourceHandle(
                    kind=ResourceKind.SECURITY_GROUP, id=group_id, attributes={"name": spec.security_group_name}
                ))
        if aws.db_subnet_group_exists(spec.subnet_group_name):
            handles.append(ResourceHandle(kind=ResourceKind.DB_SUBNET_GROUP, id=spec.subnet_group_name))
        if aws.get_secret(spec.credential_secret_name) is not None:
            handles.append(self._credential_handle(ctx))
        if aws.describe_db_instance(spec.identifier) is not None:
            handles.append(ResourceHandle(kind=ResourceKind.DB_INSTANCE, id=spec.identifier))
        return handles

    def _ensure_credential(self, ctx: StageContext) -> str:
        spec = ctx.plan.database
        aws = ctx.client.aws

        stored = aws.get_secret(spec.credential_secret_name)
        if stored is not None:
            return json.loads(stored)["password"]

        if aws.describe_db_instance(spec.identifier) is not None:
            raise DependencyMissing(
                "database credential",
                f"{spec.identifier} exists but secret {spec.credential_secret_name} is missing",
            )

        password = generate_password()
        value = json.dumps({
            "username": spec.master_username,
            "password": password,
            "engine": spec.engine,
            "dbname": spec.database_name,
            "port": spec.port,
        })
        try:
            aws.create_secret(spec.credential_secret_name, value, ctx.plan.tags)
        except ResourceConflict:
            stored = require(aws.get_secret(spec.credential_secret_name), "database credential")
            return json.loads(stored)["password"]
        logger.info(f"Stored database credential in {spec.credential_secret_name}")
        return password

    def _create_params(self, ctx: StageContext, group_id: str, password: str) -> dict[str, Any]:
        spec = ctx.plan.database
        params: dict[str, Any] = {
            "DBInstanceIdentifier": spec.identifier,
            "DBInstanceClass": spec.instance_class,
            "Engine": spec.engine,
            "AllocatedStorage": spec.allocated_storage,
            "DBName": spec.database_name,
            "MasterUsername": spec.master_username,
            "MasterUserPassword": password,
            "DBSubnetGroupName": spec.subnet_group_name,
            "VpcSecurityGroupIds": [group_id],
            "BackupRetentionPeriod": spec.backup_retention_days,
            "MultiAZ": False,
            "PubliclyAccessible": False,
            "StorageEncrypted": True,
            "Port": spec.port,
            "Tags": [{"Key": k, "Value": v} for k, v in ctx.plan.tags.items()],
        }
        if spec.engine_version:
            params["EngineVersion"] = spec.engine_version
        return params

    def _wait_available(self, ctx: StageContext) -> dict[str, Any]:
        identifier = ctx.plan.database.identifier

        def available() -> Optional[dict[str, Any]]:
            instance = ctx.client.aws.describe_db_instance(identifier)
            if instance and instance.get("DBInstanceStatus") == "available":
                return instance
            return None

        return ctx.wait(available, "RDS instance to become available", identifier, ctx.policies.database)

    def _credential_handle(self, ctx: StageContext) -> ResourceHandle:
        return ResourceHandle(kind=ResourceKind.CREDENTIAL, id=ctx.plan.database.credential_secret_name)

    def _instance_handle(self, ctx: StageContext, instance: dict[str, Any]) -> ResourceHandle:
        spec = ctx.plan.database
        endpoint = instance.get("Endpoint", {})
        address = require(endpoint.get("Address"), "RDS endpoint", spec.identifier)
        return ResourceHandle(
            kind=ResourceKind.DB_INSTANCE,
            id=spec.identifier,
            attributes={"endpoint": address, "port": str(endpoint.get("Port", spec.port))},
        )
