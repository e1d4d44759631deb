"""Stage runner for the Moodle deployment pipeline.

Runs every stage in dependency order against the resource client, persisting
the ledger after each transition:

    key_pair -> cluster -> database -> filesystem -> bucket
             -> application -> ingress -> autoscaling -> dns

A stage already marked done is skipped on rerun. Nothing is rolled back on
failure; the ledger tells cleanup what exists.
"""

import logging
import time
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from moodle_deployer.clients import ResourceClient
from moodle_deployer.core.errors import PlanValidationError, ResourceConflict, StageError
from moodle_deployer.core.ledger import LedgerStore
from moodle_deployer.core.plan import DeploymentPlan
from moodle_deployer.core.retry import Sleeper, call_with_retries
from moodle_deployer.core.state import DeploymentLedger, ResourceHandle, ResourceKind
from moodle_deployer.stages import PollPolicies, Stage, StageContext, default_pipeline

logger = logging.getLogger(__name__)


class DeploymentRecord(BaseModel):
    """Outcome of a successful deployment."""

    deployment_name: str
    url: str
    cluster_name: str
    db_endpoint: Optional[str] = None
    filesystem_id: Optional[str] = None
    bucket_name: Optional[str] = None
    alb_hostname: Optional[str] = None
    dns_record: Optional[str] = None
    ledger: DeploymentLedger = Field(exclude=True)

    @classmethod
    def from_ledger(cls, plan: DeploymentPlan, ledger: DeploymentLedger) -> "DeploymentRecord":
        def attr(kind: ResourceKind, key: Optional[str] = None) -> Optional[str]:
            handle = ledger.find_handle(kind)
            if handle is None:
                return None
            return handle.attr(key) if key else handle.id

        return cls(
            deployment_name=plan.deployment_name,
            url=plan.url,
            cluster_name=plan.cluster.name,
            db_endpoint=attr(ResourceKind.DB_INSTANCE, "endpoint"),
            filesystem_id=attr(ResourceKind.FILESYSTEM),
            bucket_name=attr(ResourceKind.BUCKET),
            alb_hostname=attr(ResourceKind.INGRESS, "hostname"),
            dns_record=attr(ResourceKind.DNS_RECORD),
            ledger=ledger,
        )


def new_ledger(plan: DeploymentPlan) -> DeploymentLedger:
    """Empty ledger for a deployment that has never run."""
    return DeploymentLedger(
        deployment_name=plan.deployment_name,
        seed=plan.seed,
        region=plan.region,
        cluster_name=plan.cluster.name,
    )


class Orchestrator:
    """Executes provisioning stages and owns the deployment ledger."""

    def __init__(
        self,
        client: ResourceClient,
        store: LedgerStore,
        policies: PollPolicies,
        state_dir: Path,
        retry_attempts: int = 3,
        sleep: Sleeper = time.sleep,
        stages: Optional[list[Stage]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            client: Adapters for AWS, eksctl, kubectl and helm
            store: Where the ledger is persisted
            policies: Wait bounds per operation class
            state_dir: Directory for kubeconfig and key material
            retry_attempts: Attempts per stage on transient API errors
            sleep: Sleep function used between polls and retries
            stages: Stage list override (defaults to the full pipeline)
        """
        self.client = client
        self.store = store
        self.policies = policies
        self.state_dir = Path(state_dir)
        self.retry_attempts = retry_attempts
        self.sleep = sleep
        self.stages = stages if stages is not None else default_pipeline()

    def run(self, plan: DeploymentPlan, ledger: Optional[DeploymentLedger] = None) -> DeploymentRecord:
        """
        Bring the deployment to the planned state.

        Args:
            plan: What to deploy
            ledger: Existing ledger; loaded from the store when omitted

        Returns:
            The deployment record built from the final ledger.

        Raises:
            StageError: If a stage fails. The partial ledger is persisted first.
            PlanValidationError: If the ledger belongs to a different seed.
        """
        if ledger is None:
            ledger = self.store.load() or new_ledger(plan)
        if ledger.seed != plan.seed:
            raise PlanValidationError(
                f"Ledger {self.store.path} was written with seed {ledger.seed}, plan uses {plan.seed}"
            )

        ctx = StageContext(
            plan=plan,
            ledger=ledger,
            client=self.client,
            policies=self.policies,
            state_dir=self.state_dir,
            sleep=self.sleep,
            persist=lambda: self.store.save(ledger),
        )
        self.store.save(ledger)

        for stage in self.stages:
            self._run_stage(stage, ctx)

        logger.info(f"Deployment {plan.deployment_name} complete: {plan.url}")
        return DeploymentRecord.from_ledger(plan, ledger)

    def _run_stage(self, stage: Stage, ctx: StageContext) -> None:
        ledger = ctx.ledger
        stage_id = stage.stage_id
        ctx.current_stage = stage_id

        if ledger.is_done(stage_id):
            logger.info(f"Stage {stage_id}: already done, skipping")
            stage.resume(ctx)
            return

        state = ledger.start_stage(stage_id)
        self.store.save(ledger)
        logger.info(f"Stage {stage_id}: {stage.description} (attempt {state.attempts})")

        try:
            handles = call_with_retries(
                lambda: self._converge(stage, ctx),
                attempts=self.retry_attempts,
                sleep=self.sleep,
            )
        except KeyboardInterrupt:
            ledger.fail_stage(stage_id, "interrupted")
            self.store.save(ledger)
            raise
        except Exception as e:
            logger.error(f"Stage {stage_id} failed: {e}")
            ledger.fail_stage(stage_id, str(e))
            self.store.save(ledger)
            raise StageError(stage_id, e, ledger) from e

        ledger.complete_stage(stage_id, handles)
        self.store.save(ledger)
        logger.info(f"Stage {stage_id}: done ({len(handles)} resources)")

    def _converge(self, stage: Stage, ctx: StageContext) -> list[ResourceHandle]:
        """Probe, create if missing, and re-probe after a creation race."""
        handles = stage.probe(ctx)
        if handles is not None:
            return handles

        try:
            return stage.create(ctx)
        except ResourceConflict as e:
            logger.warning(f"Stage {stage.stage_id}: {e}; re-probing")
            handles = stage.probe(ctx)
            if handles is None:
                raise
            return handles
