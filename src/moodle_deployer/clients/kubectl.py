"""kubectl adapter."""

import json
import logging
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

from moodle_deployer.clients.command import CommandResult, command_error, run_command

logger = logging.getLogger(__name__)

Runner = Callable[..., CommandResult]


class KubectlClient:
    """Thin wrapper around kubectl bound to one kubeconfig."""

    def __init__(self, kubeconfig: Optional[Path] = None, timeout: int = 600, runner: Runner = run_command):
        self.kubeconfig = kubeconfig
        self.timeout = timeout
        self._run = runner

    def _cmd(self, *args: str) -> list[str]:
        cmd = ["kubectl"]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", str(self.kubeconfig)])
        cmd.extend(args)
        return cmd

    def apply(self, manifests: list[dict[str, Any]]) -> None:
        """Apply manifests from stdin."""
        document = yaml.safe_dump_all(manifests, default_flow_style=False, sort_keys=False)
        self._run(self._cmd("apply", "-f", "-"), input_text=document, timeout=self.timeout)
        names = ", ".join(f"{m['kind']}/{m['metadata']['name']}" for m in manifests)
        logger.info(f"Applied {names}")

    def apply_kustomize(self, source: str) -> None:
        """Apply a kustomization (local path or remote URL)."""
        self._run(self._cmd("apply", "-k", source), timeout=self.timeout)
        logger.info(f"Applied kustomization {source}")

    def get(self, kind: str, name: str, namespace: Optional[str] = None) -> Optional[dict[str, Any]]:
        """Get an object as JSON, or None if it does not exist."""
        args = ["get", kind, name, "-o", "json"]
        if namespace:
            args.extend(["-n", namespace])

        result = self._run(self._cmd(*args), timeout=60, check=False)
        if result.ok:
            return json.loads(result.stdout)
        if "NotFound" in result.stderr or "not found" in result.stderr:
            return None
        raise command_error(f"kubectl get {kind}", result)

    def exists(self, kind: str, name: str, namespace: Optional[str] = None) -> bool:
        return self.get(kind, name, namespace) is not None

    def delete(self, kind: str, name: str, namespace: Optional[str] = None) -> bool:
        """Delete an object and wait for it to go away.

        Returns:
            False if the object did not exist.
        """
        args = ["delete", kind, name, "--ignore-not-found", "--wait=true"]
        if namespace:
            args.extend(["-n", namespace])

        result = self._run(self._cmd(*args), timeout=self.timeout)
        deleted = bool(result.stdout.strip())
        if deleted:
            logger.info(f"Deleted {kind}/{name}")
        return deleted

    def ingress_hostname(self, name: str, namespace: str) -> Optional[str]:
        """Hostname the load balancer assigned to an ingress, if any yet."""
        ingress = self.get("ingress", name, namespace)
        if not ingress:
            return None
        entries = ingress.get("status", {}).get("loadBalancer", {}).get("ingress") or []
        for entry in entries:
            if entry.get("hostname"):
                return entry["hostname"]
        return None

    def deployment_ready(self, name: str, namespace: str, min_ready: int = 1) -> bool:
        """Check that a deployment has at least ``min_ready`` ready replicas."""
        deployment = self.get("deployment", name, namespace)
        if not deployment:
            return False
        ready = deployment.get("status", {}).get("readyReplicas") or 0
        return ready >= min_ready
