"""Helm adapter for cluster add-ons."""

import json
import logging
from pathlib import Path
from typing import Callable, Optional

from moodle_deployer.clients.command import CommandResult, command_error, run_command

logger = logging.getLogger(__name__)

Runner = Callable[..., CommandResult]


class HelmClient:
    """Installs and removes Helm releases."""

    def __init__(self, kubeconfig: Optional[Path] = None, timeout: int = 600, runner: Runner = run_command):
        self.kubeconfig = kubeconfig
        self.timeout = timeout
        self._run = runner

    def _cmd(self, *args: str) -> list[str]:
        cmd = ["helm", *args]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", str(self.kubeconfig)])
        return cmd

    def add_repo(self, name: str, url: str) -> None:
        """Add (or refresh) a chart repository."""
        self._run(["helm", "repo", "add", name, url, "--force-update"], timeout=120)
        self._run(["helm", "repo", "update", name], timeout=120)

    def release_exists(self, release: str, namespace: str) -> bool:
        result = self._run(
            self._cmd("list", "-n", namespace, "--filter", f"^{release}$", "-o", "json"),
            timeout=60,
        )
        releases = json.loads(result.stdout or "[]")
        return any(r.get("name") == release for r in releases)

    def upgrade_install(
        self,
        release: str,
        chart: str,
        namespace: str,
        values: Optional[dict[str, str]] = None,
    ) -> None:
        """Install or upgrade a release and wait for it."""
        cmd = self._cmd(
            "upgrade", "--install", release, chart,
            "--namespace", namespace,
            "--create-namespace",
            "--wait", "--timeout", f"{self.timeout}s",
        )
        for key, value in (values or {}).items():
            cmd.extend(["--set", f"{key}={value}"])

        self._run(cmd, timeout=self.timeout + 60)
        logger.info(f"Release {release} deployed to {namespace}")

    def uninstall(self, release: str, namespace: str) -> bool:
        """Uninstall a release.

        Returns:
            False if the release did not exist.
        """
        result = self._run(
            self._cmd("uninstall", release, "--namespace", namespace, "--wait"),
            timeout=self.timeout,
            check=False,
        )
        if result.ok:
            logger.info(f"Release {release} uninstalled")
            return True
        if "not found" in result.stderr:
            return False
        raise command_error("helm uninstall", result)
