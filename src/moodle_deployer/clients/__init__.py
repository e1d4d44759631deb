"""Adapters over the external systems the pipeline drives.

- AWS APIs via boto3
- eksctl for cluster lifecycle and IAM integration
- kubectl for Kubernetes objects
- helm for cluster add-ons
"""

from dataclasses import dataclass
from pathlib import Path

from moodle_deployer.clients.aws import AwsResourceClient
from moodle_deployer.clients.eksctl import EksctlClient
from moodle_deployer.clients.helm import HelmClient
from moodle_deployer.clients.kubectl import KubectlClient
from moodle_deployer.config import Settings


@dataclass
class ResourceClient:
    """Bundle of adapters handed to every stage."""

    aws: AwsResourceClient
    eksctl: EksctlClient
    kubectl: KubectlClient
    helm: HelmClient


def build_resource_client(settings: Settings, kubeconfig: Path) -> ResourceClient:
    """Create real adapters for a deployment."""
    return ResourceClient(
        aws=AwsResourceClient(region=settings.region, profile=settings.aws_profile),
        eksctl=EksctlClient(region=settings.region, timeout=settings.cluster_create_timeout),
        kubectl=KubectlClient(kubeconfig=kubeconfig, timeout=settings.command_timeout),
        helm=HelmClient(kubeconfig=kubeconfig, timeout=settings.command_timeout),
    )


__all__ = [
    "AwsResourceClient",
    "EksctlClient",
    "HelmClient",
    "KubectlClient",
    "ResourceClient",
    "build_resource_client",
]
