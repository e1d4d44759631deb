"""Configuration management for the Moodle deployer."""

from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Deployment settings loaded from environment variables.

    Field names follow the variables the deployment scripts used
    (``REGION``, ``EKS_CLUSTER_NAME``, ``MIN_NODES``...), so an existing
    environment keeps working.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Deployment identity
    deployment_name: str = Field(default="moodle", description="Name of the deployment and its ledger file")
    seed: Optional[str] = Field(
        default=None, description="Seed for identifier suffixes. Generated once and kept in the ledger."
    )
    state_dir: Path = Field(default=Path(".moodle-deployer"), description="Directory for ledger, kubeconfig and keys")

    # AWS Configuration
    region: str = Field(default="us-east-1", description="AWS region")
    aws_profile: Optional[str] = Field(default=None, description="AWS profile name")

    # EKS Configuration
    eks_cluster_name: Optional[str] = Field(default=None, description="EKS cluster name")
    cluster_name_prefix: str = Field(default="moodle-cluster", description="Prefix for the computed cluster name")
    kubernetes_version: str = Field(default="1.28", description="EKS Kubernetes version")
    node_type: str = Field(default="t3.medium", description="Worker node instance type")
    min_nodes: int = Field(default=1, description="Minimum worker nodes")
    max_nodes: int = Field(default=2, description="Maximum worker nodes")
    key_pair_name: Optional[str] = Field(default=None, description="EC2 key pair for node SSH access")

    # Database Configuration
    db_identifier: Optional[str] = Field(default=None, description="RDS instance identifier")
    rds_engine: str = Field(default="postgres", description="RDS engine")
    rds_engine_version: Optional[str] = Field(default=None, description="RDS engine version")
    rds_instance_class: str = Field(default="db.t3.medium", description="RDS instance class")
    rds_storage_size: int = Field(default=20, description="RDS allocated storage in GiB")
    db_master_username: str = Field(default="moodleadmin", description="RDS master username")
    db_name: str = Field(default="moodle", description="Database created for Moodle")
    db_backup_retention_days: int = Field(default=1, description="RDS backup retention period")

    # Storage Configuration
    efs_name: str = Field(default="MoodleEFS", description="Name tag of the EFS filesystem")
    efs_claim_size: str = Field(default="5Gi", description="Requested size of the EFS claim")
    s3_bucket_name: Optional[str] = Field(default=None, description="S3 bucket for Moodle files")

    # Application Configuration
    moodle_image: str = Field(default="bitnami/moodle:5.0-debian-12", description="Moodle container image")
    namespace: str = Field(default="default", description="Kubernetes namespace for Moodle")
    replicas: int = Field(default=1, description="Initial Moodle replicas")

    # Auto Scaling Configuration
    min_pods: int = Field(default=1, description="HPA minimum replicas")
    max_pods: int = Field(default=3, description="HPA maximum replicas")
    target_cpu: int = Field(default=50, description="HPA target CPU utilisation percent")

    # Domain Configuration
    domain_name: str = Field(default="fipcuring.com", description="Route 53 hosted zone domain")
    record_name: Optional[str] = Field(default=None, description="Record pointed at the load balancer")
    hosted_zone_id: Optional[str] = Field(default=None, description="Route53 Hosted Zone ID")

    # Waits (seconds) and retries
    cluster_ready_timeout: int = Field(default=1800, description="Wait bound for the EKS cluster")
    database_ready_timeout: int = Field(default=1500, description="Wait bound for RDS availability")
    filesystem_ready_timeout: int = Field(default=300, description="Wait bound for EFS and mount targets")
    pods_ready_timeout: int = Field(default=600, description="Wait bound for Moodle pods")
    load_balancer_timeout: int = Field(default=600, description="Wait bound for the ALB hostname")
    load_balancer_max_attempts: int = Field(default=30, description="Polls of the ingress hostname")
    dns_sync_timeout: int = Field(default=300, description="Wait bound for Route 53 INSYNC")
    poll_initial_interval: float = Field(default=5.0, description="First poll interval")
    poll_max_interval: float = Field(default=60.0, description="Upper bound on poll interval")
    stage_retry_attempts: int = Field(default=3, description="Attempts per stage on transient API errors")
    command_timeout: int = Field(default=600, description="Timeout for kubectl/helm invocations")
    cluster_create_timeout: int = Field(default=2400, description="Timeout for eksctl create cluster")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    @property
    def ledger_path(self) -> Path:
        """Location of this deployment's ledger file."""
        return self.state_dir / f"{self.deployment_name}.yaml"


def load_settings(config_file: Optional[Path] = None, **overrides: Any) -> Settings:
    """Build settings from a YAML file and explicit overrides.

    Overrides win over the file, the file wins over the environment.
    ``None`` overrides are ignored so unset CLI flags fall through.
    """
    data: dict[str, Any] = {}
    if config_file is not None:
        with open(config_file, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file {config_file} must contain a mapping")
        data.update({str(k).lower(): v for k, v in loaded.items()})

    data.update({k: v for k, v in overrides.items() if v is not None})
    return Settings(**data)
