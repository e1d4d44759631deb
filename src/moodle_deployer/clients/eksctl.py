"""eksctl adapter for cluster lifecycle and IAM integration."""

import logging
from pathlib import Path
from typing import Any, Callable

import yaml

from moodle_deployer.clients.command import CommandResult, command_error, run_command

logger = logging.getLogger(__name__)

Runner = Callable[..., CommandResult]

_NOT_FOUND_MARKERS = ("does not exist", "ResourceNotFoundException", "not found")


class EksctlClient:
    """Wraps the eksctl operations the pipeline needs."""

    def __init__(self, region: str, timeout: int = 2400, runner: Runner = run_command):
        self.region = region
        self.timeout = timeout
        self._run = runner

    def create_cluster(self, config: dict[str, Any]) -> None:
        """Create a cluster from a ClusterConfig document. Blocks until done."""
        document = yaml.safe_dump(config, default_flow_style=False, sort_keys=False)
        name = config["metadata"]["name"]
        logger.info(f"Creating EKS cluster {name} (this takes 15-20 minutes)")
        self._run(["eksctl", "create", "cluster", "-f", "-"], input_text=document, timeout=self.timeout)

    def write_kubeconfig(self, cluster_name: str, kubeconfig: Path) -> None:
        kubeconfig.parent.mkdir(parents=True, exist_ok=True)
        self._run(
            [
                "eksctl", "utils", "write-kubeconfig",
                "--cluster", cluster_name,
                "--region", self.region,
                "--kubeconfig", str(kubeconfig),
            ],
            timeout=120,
        )
        logger.info(f"Kubeconfig for {cluster_name} written to {kubeconfig}")

    def associate_oidc_provider(self, cluster_name: str) -> None:
        """Associate the IAM OIDC provider (no-op if already associated)."""
        self._run(
            [
                "eksctl", "utils", "associate-iam-oidc-provider",
                "--cluster", cluster_name,
                "--region", self.region,
                "--approve",
            ],
            timeout=300,
        )

    def create_iam_service_account(
        self,
        cluster_name: str,
        name: str,
        namespace: str,
        policy_arns: list[str],
    ) -> None:
        """Create an IRSA-backed Kubernetes service account."""
        cmd = [
            "eksctl", "create", "iamserviceaccount",
            "--cluster", cluster_name,
            "--region", self.region,
            "--name", name,
            "--namespace", namespace,
            "--override-existing-serviceaccounts",
            "--approve",
        ]
        for arn in policy_arns:
            cmd.extend(["--attach-policy-arn", arn])
        self._run(cmd, timeout=600)
        logger.info(f"IAM service account {namespace}/{name} ready")

    def delete_iam_service_account(self, cluster_name: str, name: str, namespace: str) -> bool:
        return self._delete(
            [
                "eksctl", "delete", "iamserviceaccount",
                "--cluster", cluster_name,
                "--region", self.region,
                "--name", name,
                "--namespace", namespace,
                "--wait",
            ],
            f"service account {namespace}/{name}",
        )

    def delete_cluster(self, cluster_name: str) -> bool:
        """Delete a cluster and its node groups, waiting for completion.

        Returns:
            False if the cluster did not exist.
        """
        return self._delete(
            ["eksctl", "delete", "cluster", "--name", cluster_name, "--region", self.region, "--wait"],
            f"cluster {cluster_name}",
        )

    def _delete(self, cmd: list[str], what: str) -> bool:
        result = self._run(cmd, timeout=self.timeout, check=False)
        if result.ok:
            logger.info(f"Deleted {what}")
            return True
        if any(marker in result.stderr for marker in _NOT_FOUND_MARKERS):
            return False
        raise command_error(" ".join(cmd[:3]), result)
