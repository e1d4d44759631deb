"""Best-effort teardown of everything a deployment ledger records.

Resources are removed in reverse dependency order. Every step tolerates a
resource that is already gone, and failures are collected instead of stopping
the run, so one stuck resource does not strand the rest.
"""

import logging
import time
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, Field

from moodle_deployer.clients import ResourceClient
from moodle_deployer.core.errors import DeployerError
from moodle_deployer.core.ledger import LedgerStore
from moodle_deployer.core.orchestrator import new_ledger
from moodle_deployer.core.plan import DeploymentPlan
from moodle_deployer.core.retry import PollPolicy, Sleeper, call_with_retries, wait_until
from moodle_deployer.core.state import DeploymentLedger, ResourceHandle, ResourceKind
from moodle_deployer.stages import PollPolicies, Stage, StageContext, default_pipeline

logger = logging.getLogger(__name__)

# kubectl resource names, in deletion order
KUBERNETES_KINDS = (
    (ResourceKind.INGRESS, "ingress"),
    (ResourceKind.HPA, "hpa"),
    (ResourceKind.DEPLOYMENT, "deployment"),
    (ResourceKind.SERVICE, "service"),
    (ResourceKind.SECRET, "secret"),
    (ResourceKind.PVC, "pvc"),
    (ResourceKind.STORAGE_CLASS, "storageclass"),
)


class CleanupReport(BaseModel):
    """What a cleanup run removed, found absent, or failed to remove."""

    removed: list[str] = Field(default_factory=list)
    absent: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class CleanupRunner:
    """Deletes the resources recorded in a ledger."""

    def __init__(
        self,
        client: ResourceClient,
        store: LedgerStore,
        policies: PollPolicies,
        state_dir: Path,
        retry_attempts: int = 3,
        sleep: Sleeper = time.sleep,
    ):
        self.client = client
        self.store = store
        self.policies = policies
        self.state_dir = Path(state_dir)
        self.retry_attempts = retry_attempts
        self.sleep = sleep

    def run(self, ledger: DeploymentLedger) -> CleanupReport:
        """
        Remove every recorded resource.

        Handles of removed (or already absent) resources are dropped from the
        ledger as the run progresses. An emptied ledger file is deleted.

        Returns:
            The cleanup report. ``report.ok`` is False if anything failed.
        """
        report = CleanupReport()
        logger.info(f"Cleaning up deployment {ledger.deployment_name} ({len(ledger.all_handles())} resources)")

        self._remove_dns(ledger, report)
        self._remove_kubernetes(ledger, report)
        self._remove_database(ledger, report)
        self._remove_storage(ledger, report)
        self._remove_cluster(ledger, report)
        self._remove_key_pairs(ledger, report)

        if ledger.is_empty():
            self.store.delete()
        else:
            self.store.save(ledger)

        logger.info(
            f"Cleanup finished: {len(report.removed)} removed, "
            f"{len(report.absent)} already absent, {len(report.errors)} errors"
        )
        return report

    def discover(self, plan: DeploymentPlan, stages: Optional[list[Stage]] = None) -> DeploymentLedger:
        """
        Rebuild a ledger from what exists in the account.

        Each stage looks up its resources by the plan's deterministic names.
        Lookups that fail are logged and skipped.
        """
        ledger = new_ledger(plan)
        ctx = StageContext(
            plan=plan,
            ledger=ledger,
            client=self.client,
            policies=self.policies,
            state_dir=self.state_dir,
            sleep=self.sleep,
        )
        for stage in stages if stages is not None else default_pipeline():
            ctx.current_stage = stage.stage_id
            try:
                handles = stage.discover(ctx)
            except DeployerError as e:
                logger.warning(f"Discovery of {stage.stage_id} skipped: {e}")
                continue
            if handles:
                ledger.complete_stage(stage.stage_id, handles)
                logger.info(f"Discovered {', '.join(str(h) for h in handles)}")
        return ledger

    def _remove(
        self,
        ledger: DeploymentLedger,
        report: CleanupReport,
        handle: ResourceHandle,
        delete: Callable[[], bool],
    ) -> bool:
        """Run one delete, retrying transient errors, and drop the handle on success."""
        try:
            removed = call_with_retries(delete, attempts=self.retry_attempts, sleep=self.sleep)
        except DeployerError as e:
            logger.error(f"Failed to delete {handle}: {e}")
            report.errors.append(f"{handle}: {e}")
            return False

        if removed:
            logger.info(f"Deleted {handle}")
            report.removed.append(str(handle))
        else:
            logger.info(f"{handle} already absent")
            report.absent.append(str(handle))
        ledger.remove_handle(handle)
        self.store.save(ledger)
        return True

    def _mark_absent(self, ledger: DeploymentLedger, report: CleanupReport, handle: ResourceHandle) -> None:
        self._remove(ledger, report, handle, lambda: False)

    def _remove_dns(self, ledger: DeploymentLedger, report: CleanupReport) -> None:
        aws = self.client.aws
        for handle in ledger.handles_of_kind(ResourceKind.DNS_RECORD):
            self._remove(
                ledger, report, handle,
                lambda h=handle: aws.change_alias_record(
                    "DELETE",
                    h.attr("zone_id"),
                    h.attr("name", h.id),
                    h.attr("type", "A"),
                    h.attr("alias_dns_name"),
                    h.attr("alias_zone_id"),
                ) is not None,
            )

    def _remove_kubernetes(self, ledger: DeploymentLedger, report: CleanupReport) -> None:
        handles = [h for kind, _ in KUBERNETES_KINDS for h in ledger.handles_of_kind(kind)]
        accounts = ledger.handles_of_kind(ResourceKind.SERVICE_ACCOUNT)
        releases = ledger.handles_of_kind(ResourceKind.HELM_RELEASE)
        if not (handles or accounts or releases):
            return

        try:
            reachable = self._cluster_reachable(ledger)
        except DeployerError as e:
            report.errors.append(f"cluster/{ledger.cluster_name}: {e}")
            return

        if not reachable:
            # Objects inside a deleted cluster are gone with it
            for handle in handles + accounts + releases:
                self._mark_absent(ledger, report, handle)
            return

        kubectl = self.client.kubectl
        names = dict(KUBERNETES_KINDS)
        for handle in handles:
            self._remove(
                ledger, report, handle,
                lambda h=handle: kubectl.delete(names[h.kind], h.id, h.attr("namespace") or None),
            )

        for handle in accounts:
            self._remove(
                ledger, report, handle,
                lambda h=handle: self.client.eksctl.delete_iam_service_account(
                    h.attr("cluster", ledger.cluster_name), h.id, h.attr("namespace", "default")
                ),
            )
        for handle in releases:
            self._remove(
                ledger, report, handle,
                lambda h=handle: self.client.helm.uninstall(h.id, h.attr("namespace", "default")),
            )

    def _cluster_reachable(self, ledger: DeploymentLedger) -> bool:
        cluster = self.client.aws.describe_cluster(ledger.cluster_name)
        if cluster is None or cluster.get("status") != "ACTIVE":
            return False
        kubeconfig = self._kubeconfig_path(ledger)
        if not kubeconfig.exists():
            self.client.eksctl.write_kubeconfig(ledger.cluster_name, kubeconfig)
        return True

    def _remove_database(self, ledger: DeploymentLedger, report: CleanupReport) -> None:
        aws = self.client.aws

        for handle in ledger.handles_of_kind(ResourceKind.DB_INSTANCE):
            def delete_instance(h: ResourceHandle = handle) -> bool:
                if not aws.delete_db_instance(h.id):
                    return False
                self._wait(
                    lambda: aws.describe_db_instance(h.id) is None,
                    "RDS instance deletion",
                    h.id,
                    self.policies.database,
                )
                return True

            self._remove(ledger, report, handle, delete_instance)

        for handle in ledger.handles_of_kind(ResourceKind.DB_SUBNET_GROUP):
            self._remove(ledger, report, handle, lambda h=handle: aws.delete_db_subnet_group(h.id))
        for handle in ledger.handles_of_kind(ResourceKind.SECURITY_GROUP):
            self._remove(ledger, report, handle, lambda h=handle: aws.delete_security_group(h.id))
        for handle in ledger.handles_of_kind(ResourceKind.CREDENTIAL):
            self._remove(ledger, report, handle, lambda h=handle: aws.delete_secret(h.id))

    def _remove_storage(self, ledger: DeploymentLedger, report: CleanupReport) -> None:
        aws = self.client.aws

        for handle in ledger.handles_of_kind(ResourceKind.MOUNT_TARGET):
            self._remove(ledger, report, handle, lambda h=handle: aws.delete_mount_target(h.id))

        for handle in ledger.handles_of_kind(ResourceKind.FILESYSTEM):
            def delete_filesystem(h: ResourceHandle = handle) -> bool:
                if aws.describe_filesystem(h.id) is None:
                    return False
                self._wait(
                    lambda: not aws.mount_targets(h.id),
                    "EFS mount targets deletion",
                    h.id,
                    self.policies.filesystem,
                )
                return aws.delete_filesystem(h.id)

            self._remove(ledger, report, handle, delete_filesystem)

        for handle in ledger.handles_of_kind(ResourceKind.BUCKET):
            self._remove(ledger, report, handle, lambda h=handle: aws.empty_and_delete_bucket(h.id))

    def _remove_cluster(self, ledger: DeploymentLedger, report: CleanupReport) -> None:
        for handle in ledger.handles_of_kind(ResourceKind.CLUSTER):
            removed = self._remove(ledger, report, handle, lambda h=handle: self.client.eksctl.delete_cluster(h.id))
            if removed:
                _unlink(Path(handle.attr("kubeconfig") or self._kubeconfig_path(ledger)))

    def _remove_key_pairs(self, ledger: DeploymentLedger, report: CleanupReport) -> None:
        for handle in ledger.handles_of_kind(ResourceKind.KEY_PAIR):
            removed = self._remove(ledger, report, handle, lambda h=handle: self.client.aws.delete_key_pair(h.id))
            if removed:
                _unlink(Path(handle.attr("pem_path") or self.state_dir / f"{handle.id}.pem"))

    def _kubeconfig_path(self, ledger: DeploymentLedger) -> Path:
        return self.state_dir / f"{ledger.deployment_name}.kubeconfig"

    def _wait(self, probe: Callable[[], bool], description: str, resource_id: str, policy: PollPolicy) -> None:
        wait_until(probe, description=description, resource_id=resource_id, policy=policy, sleep=self.sleep)


def _unlink(path: Path) -> None:
    if path.exists():
        path.unlink()
        logger.info(f"Removed {path}")
