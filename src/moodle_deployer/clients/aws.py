"""AWS adapter: narrow typed wrappers over the boto3 calls the pipeline uses.

Every method maps one provider operation. botocore errors are translated into
the deployer taxonomy:

- "not found" codes return ``None``/``False``
- "already exists" codes raise ``ResourceConflict``
- everything else raises ``ExternalApiError``, flagged transient for
  throttling and server-side codes

No retries happen here; the orchestrator and the cleanup runner own them.
"""

import logging
from typing import Any, Optional

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from moodle_deployer.core.errors import ExternalApiError, ResourceConflict

logger = logging.getLogger(__name__)

TRANSIENT_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "RequestThrottled",
    "SlowDown",
    "PriorRequestNotComplete",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalError",
    "InternalFailure",
    "InternalServerError",
    "RequestTimeout",
    "RequestTimeoutException",
    "DependencyViolation",
    "FileSystemInUse",
    "InvalidDBInstanceState",
    "IncorrectState",
})

_TRANSIENT_BOTOCORE = (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError)


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "Unknown")


def _error_message(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Message", str(error))


def _api_error(label: str, error: Exception) -> ExternalApiError:
    """Translate a botocore failure that is neither "not found" nor a conflict."""
    if isinstance(error, ClientError):
        code = _error_code(error)
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        logger.error(f"AWS API call: {label} - ClientError: {code}")
        return ExternalApiError(
            label,
            _error_message(error),
            code=code,
            transient=code in TRANSIENT_CODES or status >= 500,
        )
    logger.error(f"AWS API call: {label} - BotoCoreError: {error}")
    return ExternalApiError(label, str(error), transient=isinstance(error, _TRANSIENT_BOTOCORE))


class AwsResourceClient:
    """Typed access to EC2, EKS, RDS, EFS, S3, ELBv2, Route 53, STS and Secrets Manager."""

    def __init__(
        self,
        region: str,
        profile: Optional[str] = None,
        clients: Optional[dict[str, Any]] = None,
    ):
        """
        Initialize the client.

        Args:
            region: AWS region for all regional services
            profile: Optional named AWS profile
            clients: Pre-built boto3 clients keyed by service name (used by tests)
        """
        self.region = region
        self._profile = profile
        self._session: Optional[boto3.Session] = None
        self._clients: dict[str, Any] = dict(clients or {})

    def _client(self, service: str) -> Any:
        if service not in self._clients:
            if self._session is None:
                session_kwargs = {"region_name": self.region}
                if self._profile:
                    session_kwargs["profile_name"] = self._profile
                self._session = boto3.Session(**session_kwargs)
            self._clients[service] = self._session.client(service)
        return self._clients[service]

    def _call(
        self,
        service: str,
        operation: str,
        *,
        missing_codes: tuple[str, ...] = (),
        conflict_codes: tuple[str, ...] = (),
        resource: str = "",
        **params: Any,
    ) -> Optional[dict[str, Any]]:
        """Invoke one API operation with error translation."""
        label = f"{service}.{operation}"
        try:
            response = getattr(self._client(service), operation)(**params)
        except ClientError as e:
            code = _error_code(e)
            if code in missing_codes:
                logger.debug(f"AWS API call: {label} - {code} (treated as not found)")
                return None
            if code in conflict_codes:
                raise ResourceConflict(service, resource or label, code) from e
            raise _api_error(label, e) from e
        except BotoCoreError as e:
            raise _api_error(label, e) from e

        if isinstance(response, dict):
            response.pop("ResponseMetadata", None)
        logger.debug(f"AWS API call: {label} - Success")
        return response

    # ------------------------------------------------------------------ STS

    def caller_identity(self) -> dict[str, str]:
        response = self._call("sts", "get_caller_identity")
        return {"account": response["Account"], "arn": response["Arn"]}

    # ------------------------------------------------------------------ EC2

    def find_key_pair(self, name: str) -> Optional[str]:
        """Key pair id for ``name``, or None."""
        response = self._call(
            "ec2", "describe_key_pairs",
            missing_codes=("InvalidKeyPair.NotFound",),
            KeyNames=[name],
        )
        if not response or not response.get("KeyPairs"):
            return None
        return response["KeyPairs"][0]["KeyPairId"]

    def create_key_pair(self, name: str, tags: dict[str, str]) -> tuple[str, str]:
        """Create a key pair.

        Returns:
            (key pair id, private key material)
        """
        response = self._call(
            "ec2", "create_key_pair",
            conflict_codes=("InvalidKeyPair.Duplicate",),
            resource=name,
            KeyName=name,
            TagSpecifications=[{"ResourceType": "key-pair", "Tags": _tag_list(tags)}],
        )
        return response["KeyPairId"], response["KeyMaterial"]

    def delete_key_pair(self, name: str) -> bool:
        if self.find_key_pair(name) is None:
            return False
        self._call("ec2", "delete_key_pair", KeyName=name)
        return True

    def vpc_cidr(self, vpc_id: str) -> Optional[str]:
        response = self._call("ec2", "describe_vpcs", missing_codes=("InvalidVpcID.NotFound",), VpcIds=[vpc_id])
        if not response or not response.get("Vpcs"):
            return None
        return response["Vpcs"][0].get("CidrBlock") or None

    def private_subnet_ids(self, vpc_id: str) -> list[str]:
        """Private subnets eksctl created in the cluster VPC."""
        response = self._call(
            "ec2", "describe_subnets",
            Filters=[
                {"Name": "vpc-id", "Values": [vpc_id]},
                {"Name": "tag:aws:cloudformation:logical-id", "Values": ["SubnetPrivate*"]},
            ],
        )
        return sorted(s["SubnetId"] for s in response.get("Subnets", []))

    def find_security_group(self, vpc_id: str, name: str) -> Optional[str]:
        response = self._call(
            "ec2", "describe_security_groups",
            Filters=[
                {"Name": "vpc-id", "Values": [vpc_id]},
                {"Name": "group-name", "Values": [name]},
            ],
        )
        groups = response.get("SecurityGroups", [])
        return groups[0]["GroupId"] if groups else None

    def node_security_group(self, vpc_id: str) -> Optional[str]:
        """Security group shared by all nodes of an eksctl cluster."""
        response = self._call(
            "ec2", "describe_security_groups",
            Filters=[
                {"Name": "vpc-id", "Values": [vpc_id]},
                {"Name": "tag:Name", "Values": ["*ClusterSharedNodeSecurityGroup*"]},
            ],
        )
        groups = response.get("SecurityGroups", [])
        return groups[0]["GroupId"] if groups else None

    def create_security_group(self, vpc_id: str, name: str, description: str, tags: dict[str, str]) -> str:
        response = self._call(
            "ec2", "create_security_group",
            conflict_codes=("InvalidGroup.Duplicate",),
            resource=name,
            GroupName=name,
            Description=description,
            VpcId=vpc_id,
            TagSpecifications=[{"ResourceType": "security-group", "Tags": _tag_list(tags)}],
        )
        return response["GroupId"]

    def allow_tcp_ingress(self, group_id: str, port: int, cidr: str) -> None:
        """Open a TCP port to a CIDR (no-op if the rule exists)."""
        try:
            self._call(
                "ec2", "authorize_security_group_ingress",
                conflict_codes=("InvalidPermission.Duplicate",),
                resource=group_id,
                GroupId=group_id,
                IpPermissions=[{
                    "IpProtocol": "tcp",
                    "FromPort": port,
                    "ToPort": port,
                    "IpRanges": [{"CidrIp": cidr}],
                }],
            )
        except ResourceConflict:
            logger.debug(f"Ingress rule {cidr}:{port} already present on {group_id}")

    def delete_security_group(self, group_id: str) -> bool:
        response = self._call(
            "ec2", "delete_security_group",
            missing_codes=("InvalidGroup.NotFound",),
            GroupId=group_id,
        )
        return response is not None

    # ------------------------------------------------------------------ EKS

    def describe_cluster(self, name: str) -> Optional[dict[str, Any]]:
        response = self._call("eks", "describe_cluster", missing_codes=("ResourceNotFoundException",), name=name)
        return response["cluster"] if response else None

    # ------------------------------------------------------------------ RDS

    def describe_db_instance(self, identifier: str) -> Optional[dict[str, Any]]:
        response = self._call(
            "rds", "describe_db_instances",
            missing_codes=("DBInstanceNotFound", "DBInstanceNotFoundFault"),
            DBInstanceIdentifier=identifier,
        )
        if not response or not response.get("DBInstances"):
            return None
        return response["DBInstances"][0]

    def db_subnet_group_exists(self, name: str) -> bool:
        response = self._call(
            "rds", "describe_db_subnet_groups",
            missing_codes=("DBSubnetGroupNotFoundFault",),
            DBSubnetGroupName=name,
        )
        return bool(response and response.get("DBSubnetGroups"))

    def create_db_subnet_group(self, name: str, subnet_ids: list[str], tags: dict[str, str]) -> None:
        self._call(
            "rds", "create_db_subnet_group",
            conflict_codes=("DBSubnetGroupAlreadyExists", "DBSubnetGroupAlreadyExistsFault"),
            resource=name,
            DBSubnetGroupName=name,
            DBSubnetGroupDescription="Moodle DB Subnet Group",
            SubnetIds=subnet_ids,
            Tags=_tag_list(tags),
        )

    def create_db_instance(self, params: dict[str, Any]) -> dict[str, Any]:
        """Create an RDS instance from prepared ``CreateDBInstance`` parameters."""
        response = self._call(
            "rds", "create_db_instance",
            conflict_codes=("DBInstanceAlreadyExists", "DBInstanceAlreadyExistsFault"),
            resource=params["DBInstanceIdentifier"],
            **params,
        )
        return response["DBInstance"]

    def delete_db_instance(self, identifier: str) -> bool:
        """Delete without a final snapshot.

        Returns:
            False if the instance did not exist.
        """
        instance = self.describe_db_instance(identifier)
        if instance is None:
            return False
        if instance.get("DBInstanceStatus") == "deleting":
            return True
        response = self._call(
            "rds", "delete_db_instance",
            missing_codes=("DBInstanceNotFound", "DBInstanceNotFoundFault"),
            DBInstanceIdentifier=identifier,
            SkipFinalSnapshot=True,
            DeleteAutomatedBackups=True,
        )
        return response is not None

    def delete_db_subnet_group(self, name: str) -> bool:
        response = self._call(
            "rds", "delete_db_subnet_group",
            missing_codes=("DBSubnetGroupNotFoundFault",),
            DBSubnetGroupName=name,
        )
        return response is not None

    # ------------------------------------------------------- Secrets Manager

    def get_secret(self, name: str) -> Optional[str]:
        response = self._call(
            "secretsmanager", "get_secret_value",
            missing_codes=("ResourceNotFoundException",),
            SecretId=name,
        )
        return response.get("SecretString") if response else None

    def create_secret(self, name: str, value: str, tags: dict[str, str]) -> str:
        response = self._call(
            "secretsmanager", "create_secret",
            conflict_codes=("ResourceExistsException",),
            resource=name,
            Name=name,
            SecretString=value,
            Tags=_tag_list(tags),
        )
        return response["ARN"]

    def delete_secret(self, name: str) -> bool:
        response = self._call(
            "secretsmanager", "delete_secret",
            missing_codes=("ResourceNotFoundException",),
            SecretId=name,
            ForceDeleteWithoutRecovery=True,
        )
        return response is not None

    # ------------------------------------------------------------------ EFS

    def find_filesystem(self, creation_token: str) -> Optional[dict[str, Any]]:
        response = self._call("efs", "describe_file_systems", CreationToken=creation_token)
        systems = response.get("FileSystems", [])
        return systems[0] if systems else None

    def describe_filesystem(self, filesystem_id: str) -> Optional[dict[str, Any]]:
        response = self._call(
            "efs", "describe_file_systems",
            missing_codes=("FileSystemNotFound",),
            FileSystemId=filesystem_id,
        )
        if not response or not response.get("FileSystems"):
            return None
        return response["FileSystems"][0]

    def create_filesystem(self, creation_token: str, name: str, tags: dict[str, str]) -> dict[str, Any]:
        return self._call(
            "efs", "create_file_system",
            conflict_codes=("FileSystemAlreadyExists",),
            resource=creation_token,
            CreationToken=creation_token,
            PerformanceMode="generalPurpose",
            Encrypted=True,
            Tags=_tag_list({"Name": name, **tags}),
        )

    def mount_targets(self, filesystem_id: str) -> list[dict[str, Any]]:
        response = self._call(
            "efs", "describe_mount_targets",
            missing_codes=("FileSystemNotFound",),
            FileSystemId=filesystem_id,
        )
        return response.get("MountTargets", []) if response else []

    def create_mount_target(self, filesystem_id: str, subnet_id: str, security_group_id: str) -> str:
        response = self._call(
            "efs", "create_mount_target",
            conflict_codes=("MountTargetConflict",),
            resource=f"{filesystem_id}:{subnet_id}",
            FileSystemId=filesystem_id,
            SubnetId=subnet_id,
            SecurityGroups=[security_group_id],
        )
        return response["MountTargetId"]

    def delete_mount_target(self, mount_target_id: str) -> bool:
        response = self._call(
            "efs", "delete_mount_target",
            missing_codes=("MountTargetNotFound",),
            MountTargetId=mount_target_id,
        )
        return response is not None

    def delete_filesystem(self, filesystem_id: str) -> bool:
        response = self._call(
            "efs", "delete_file_system",
            missing_codes=("FileSystemNotFound",),
            FileSystemId=filesystem_id,
        )
        return response is not None

    # ------------------------------------------------------------------- S3

    def bucket_exists(self, name: str) -> bool:
        """Check whether a bucket exists and belongs to this account."""
        response = self._call("s3", "head_bucket", missing_codes=("404", "NoSuchBucket", "NotFound"), Bucket=name)
        return response is not None

    def create_bucket(self, name: str, tags: dict[str, str]) -> None:
        params: dict[str, Any] = {"Bucket": name}
        # us-east-1 rejects an explicit LocationConstraint
        if self.region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        self._call("s3", "create_bucket", conflict_codes=("BucketAlreadyOwnedByYou",), resource=name, **params)
        self._call(
            "s3", "put_public_access_block",
            Bucket=name,
            PublicAccessBlockConfiguration={
                "BlockPublicAcls": True,
                "IgnorePublicAcls": True,
                "BlockPublicPolicy": True,
                "RestrictPublicBuckets": True,
            },
        )
        self._call("s3", "put_bucket_tagging", Bucket=name, Tagging={"TagSet": _tag_list(tags)})

    def empty_and_delete_bucket(self, name: str) -> bool:
        """Delete every object version, then the bucket.

        Returns:
            False if the bucket did not exist.
        """
        if not self.bucket_exists(name):
            return False

        paginator = self._client("s3").get_paginator("list_object_versions")
        try:
            for page in paginator.paginate(Bucket=name):
                objects = [
                    {"Key": item["Key"], "VersionId": item["VersionId"]}
                    for item in page.get("Versions", []) + page.get("DeleteMarkers", [])
                ]
                if objects:
                    self._call("s3", "delete_objects", Bucket=name, Delete={"Objects": objects, "Quiet": True})
        except (ClientError, BotoCoreError) as e:
            raise _api_error("s3.list_object_versions", e) from e

        response = self._call("s3", "delete_bucket", missing_codes=("NoSuchBucket",), Bucket=name)
        return response is not None

    # ---------------------------------------------------------------- ELBv2

    def load_balancer_zone_id(self, dns_name: str) -> Optional[str]:
        """Canonical hosted zone of the load balancer with ``dns_name``."""
        paginator = self._client("elbv2").get_paginator("describe_load_balancers")
        try:
            for page in paginator.paginate():
                for lb in page.get("LoadBalancers", []):
                    if lb.get("DNSName", "").lower() == dns_name.lower():
                        return lb.get("CanonicalHostedZoneId")
        except (ClientError, BotoCoreError) as e:
            raise _api_error("elbv2.describe_load_balancers", e) from e
        return None

    # ------------------------------------------------------------- Route 53

    def find_hosted_zone_id(self, domain_name: str) -> Optional[str]:
        response = self._call("route53", "list_hosted_zones_by_name", DNSName=domain_name, MaxItems="1")
        for zone in response.get("HostedZones", []):
            if zone["Name"].lower() == domain_name.lower():
                return zone["Id"].split("/")[-1]
        return None

    def find_record(self, zone_id: str, name: str, record_type: str) -> Optional[dict[str, Any]]:
        response = self._call(
            "route53", "list_resource_record_sets",
            HostedZoneId=zone_id,
            StartRecordName=name,
            StartRecordType=record_type,
            MaxItems="1",
        )
        for record in response.get("ResourceRecordSets", []):
            if record["Name"].lower() == name.lower() and record["Type"] == record_type:
                return record
        return None

    def change_alias_record(
        self,
        action: str,
        zone_id: str,
        name: str,
        record_type: str,
        alias_dns_name: str,
        alias_zone_id: str,
    ) -> Optional[str]:
        """UPSERT or DELETE an alias record.

        Returns:
            The change id, or None when deleting a record that is not there.
        """
        missing = ("InvalidChangeBatch",) if action == "DELETE" else ()
        response = self._call(
            "route53", "change_resource_record_sets",
            missing_codes=missing,
            HostedZoneId=zone_id,
            ChangeBatch={
                "Comment": f"{action} alias record for Moodle ALB",
                "Changes": [{
                    "Action": action,
                    "ResourceRecordSet": {
                        "Name": name,
                        "Type": record_type,
                        "AliasTarget": {
                            "HostedZoneId": alias_zone_id,
                            "DNSName": alias_dns_name,
                            "EvaluateTargetHealth": False,
                        },
                    },
                }],
            },
        )
        return response["ChangeInfo"]["Id"] if response else None

    def change_status(self, change_id: str) -> str:
        response = self._call("route53", "get_change", Id=change_id)
        return response["ChangeInfo"]["Status"]


def _tag_list(tags: dict[str, str]) -> list[dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in tags.items()]
