"""Deployment plan: the immutable desired end state of a Moodle deployment."""

import hashlib
import re
import secrets
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from moodle_deployer.config import Settings
from moodle_deployer.core.errors import PlanValidationError

SUFFIX_LENGTH = 10

NODE_POLICY_ARNS = (
    "arn:aws:iam::aws:policy/AmazonEKSWorkerNodePolicy",
    "arn:aws:iam::aws:policy/AmazonEKS_CNI_Policy",
    "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryReadOnly",
    "arn:aws:iam::aws:policy/ElasticLoadBalancingFullAccess",
)

_BUCKET_NAME = re.compile(r"^[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]$")


class ClusterSpec(BaseModel):
    """EKS cluster and managed node group."""

    model_config = ConfigDict(frozen=True)

    region: str
    name: str
    kubernetes_version: str
    node_type: str
    min_nodes: int
    max_nodes: int
    key_pair_name: str
    node_policy_arns: tuple[str, ...] = NODE_POLICY_ARNS


class DatabaseSpec(BaseModel):
    """RDS instance backing Moodle."""

    model_config = ConfigDict(frozen=True)

    identifier: str
    engine: str
    engine_version: Optional[str] = None
    instance_class: str
    allocated_storage: int
    master_username: str
    database_name: str
    port: int = 5432
    backup_retention_days: int = 1
    subnet_group_name: str
    security_group_name: str
    credential_secret_name: str


class StorageSpec(BaseModel):
    """EFS filesystem for moodledata and the S3 bucket for files."""

    model_config = ConfigDict(frozen=True)

    efs_creation_token: str
    efs_name: str
    storage_class_name: str = "efs-sc"
    claim_name: str = "efs-claim"
    claim_size: str = "5Gi"
    bucket_name: str


class AppSpec(BaseModel):
    """Moodle workload in the cluster."""

    model_config = ConfigDict(frozen=True)

    name: str = "moodle"
    namespace: str = "default"
    image: str
    replicas: int = 1
    service_name: str = "moodle-service"
    service_account_name: str = "moodle"
    db_secret_name: str = "moodle-db-secret"
    ingress_name: str = "moodle-ingress"
    health_check_path: str = "/login/index.php"
    cpu_request: str = "500m"
    memory_request: str = "1Gi"
    cpu_limit: str = "1000m"
    memory_limit: str = "2Gi"


class ScalingSpec(BaseModel):
    """Horizontal pod autoscaler bounds."""

    model_config = ConfigDict(frozen=True)

    hpa_name: str = "moodle"
    min_pods: int
    max_pods: int
    target_cpu: int


class DnsSpec(BaseModel):
    """Route 53 alias record in front of the load balancer."""

    model_config = ConfigDict(frozen=True)

    domain_name: str
    record_name: str
    record_type: str = "A"
    hosted_zone_id: Optional[str] = None


class DeploymentPlan(BaseModel):
    """Immutable snapshot of everything a deployment should consist of."""

    model_config = ConfigDict(frozen=True)

    deployment_name: str
    seed: str
    suffix: str
    cluster: ClusterSpec
    database: DatabaseSpec
    storage: StorageSpec
    app: AppSpec
    scaling: ScalingSpec
    dns: DnsSpec
    tags: dict[str, str] = Field(default_factory=dict)

    @property
    def region(self) -> str:
        return self.cluster.region

    @property
    def url(self) -> str:
        """Public URL Moodle will be served at."""
        return f"http://{self.dns.record_name.rstrip('.')}"


def new_seed() -> str:
    """Generate a fresh seed for a deployment that has no ledger yet."""
    return secrets.token_hex(8)


def derive_suffix(deployment_name: str, seed: str, length: int = SUFFIX_LENGTH) -> str:
    """Deterministic, collision-resistant suffix for resource identifiers."""
    digest = hashlib.sha256(f"{deployment_name}:{seed}".encode("utf-8")).hexdigest()
    return digest[:length]


def fqdn(name: str) -> str:
    """Normalize a DNS name to the dotted form Route 53 returns."""
    name = name.strip().lower()
    return name if name.endswith(".") else name + "."


def build_plan(settings: Settings, seed: str) -> DeploymentPlan:
    """
    Build a deployment plan from settings.

    Identifiers not set explicitly get a suffix derived from the seed, so the
    same seed always produces the same names.

    Args:
        settings: Deployment settings
        seed: Seed recorded in the ledger (or supplied by the operator)

    Returns:
        The validated deployment plan.

    Raises:
        PlanValidationError: If the settings are inconsistent.
    """
    if not seed:
        raise PlanValidationError("A non-empty seed is required")

    _validate(settings)

    name = settings.deployment_name
    suffix = derive_suffix(name, seed)

    cluster_name = settings.eks_cluster_name or f"{settings.cluster_name_prefix}-{suffix}"
    bucket_name = settings.s3_bucket_name or f"{name}-data-{suffix}"
    if not _BUCKET_NAME.match(bucket_name):
        raise PlanValidationError(f"Invalid S3 bucket name: {bucket_name}")

    db_identifier = settings.db_identifier or f"{name}-db-{suffix}"
    record_name = settings.record_name or f"www.{settings.domain_name}"

    return DeploymentPlan(
        deployment_name=name,
        seed=seed,
        suffix=suffix,
        cluster=ClusterSpec(
            region=settings.region,
            name=cluster_name,
            kubernetes_version=settings.kubernetes_version,
            node_type=settings.node_type,
            min_nodes=settings.min_nodes,
            max_nodes=settings.max_nodes,
            key_pair_name=settings.key_pair_name or f"{name}-key-{suffix}",
        ),
        database=DatabaseSpec(
            identifier=db_identifier,
            engine=settings.rds_engine,
            engine_version=settings.rds_engine_version,
            instance_class=settings.rds_instance_class,
            allocated_storage=settings.rds_storage_size,
            master_username=settings.db_master_username,
            database_name=settings.db_name,
            backup_retention_days=settings.db_backup_retention_days,
            subnet_group_name=f"{db_identifier}-subnets",
            security_group_name=f"{db_identifier}-sg",
            credential_secret_name=f"{name}/{suffix}/db-master",
        ),
        storage=StorageSpec(
            efs_creation_token=f"{name}-efs-{suffix}",
            efs_name=settings.efs_name,
            claim_size=settings.efs_claim_size,
            bucket_name=bucket_name,
        ),
        app=AppSpec(
            namespace=settings.namespace,
            image=settings.moodle_image,
            replicas=settings.replicas,
        ),
        scaling=ScalingSpec(
            min_pods=settings.min_pods,
            max_pods=settings.max_pods,
            target_cpu=settings.target_cpu,
        ),
        dns=DnsSpec(
            domain_name=fqdn(settings.domain_name),
            record_name=fqdn(record_name),
            hosted_zone_id=settings.hosted_zone_id,
        ),
        tags={"moodle-deployer/deployment": name, "moodle-deployer/suffix": suffix},
    )


def _validate(settings: Settings) -> None:
    if settings.min_nodes < 1 or settings.min_nodes > settings.max_nodes:
        raise PlanValidationError(
            f"Node bounds must satisfy 1 <= min <= max (got {settings.min_nodes}..{settings.max_nodes})"
        )
    if settings.min_pods < 1 or settings.min_pods > settings.max_pods:
        raise PlanValidationError(
            f"Pod bounds must satisfy 1 <= min <= max (got {settings.min_pods}..{settings.max_pods})"
        )
    if not 1 <= settings.target_cpu <= 100:
        raise PlanValidationError(f"Target CPU must be within 1..100 (got {settings.target_cpu})")
    if settings.rds_storage_size < 20:
        raise PlanValidationError("RDS allocated storage must be at least 20 GiB")
    if not settings.domain_name.strip():
        raise PlanValidationError("A domain name is required")
