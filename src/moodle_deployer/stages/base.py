"""Base stage class for all provisioning stages."""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, TypeVar

from moodle_deployer.clients import ResourceClient
from moodle_deployer.config import Settings
from moodle_deployer.core.errors import DependencyMissing
from moodle_deployer.core.plan import DeploymentPlan
from moodle_deployer.core.retry import PollPolicy, Sleeper, wait_until
from moodle_deployer.core.state import DeploymentLedger, ResourceHandle, ResourceKind

T = TypeVar("T")


@dataclass
class PollPolicies:
    """Wait bounds per operation class."""

    cluster: PollPolicy
    database: PollPolicy
    filesystem: PollPolicy
    pods: PollPolicy
    load_balancer: PollPolicy
    dns: PollPolicy

    @classmethod
    def from_settings(cls, settings: Settings) -> "PollPolicies":
        def policy(timeout: float, max_attempts: Optional[int] = None) -> PollPolicy:
            return PollPolicy(
                timeout_seconds=timeout,
                max_attempts=max_attempts,
                initial_interval=settings.poll_initial_interval,
                max_interval=settings.poll_max_interval,
            )

        return cls(
            cluster=policy(settings.cluster_ready_timeout),
            database=policy(settings.database_ready_timeout),
            filesystem=policy(settings.filesystem_ready_timeout),
            pods=policy(settings.pods_ready_timeout),
            load_balancer=policy(settings.load_balancer_timeout, settings.load_balancer_max_attempts),
            dns=policy(settings.dns_sync_timeout),
        )


@dataclass
class StageContext:
    """Everything a stage needs: the plan, the ledger and the adapters."""

    plan: DeploymentPlan
    ledger: DeploymentLedger
    client: ResourceClient
    policies: PollPolicies
    state_dir: Path
    sleep: Sleeper = time.sleep
    persist: Callable[[], None] = lambda: None
    current_stage: str = ""

    @property
    def kubeconfig_path(self) -> Path:
        return self.state_dir / f"{self.plan.deployment_name}.kubeconfig"

    @property
    def key_path(self) -> Path:
        return self.state_dir / f"{self.plan.cluster.key_pair_name}.pem"

    def record(self, handle: ResourceHandle) -> ResourceHandle:
        """Persist a handle before the stage finishes.

        Lets cleanup find resources created by a stage that later fails.
        """
        self.ledger.record_partial(self.current_stage, [handle])
        self.persist()
        return handle

    def handle(self, kind: ResourceKind) -> Optional[ResourceHandle]:
        return self.ledger.find_handle(kind)

    def require_handle(self, kind: ResourceKind, attribute: Optional[str] = None) -> ResourceHandle:
        """Get a handle produced by an earlier stage.

        Raises:
            DependencyMissing: If the handle (or the attribute) is absent.
        """
        found = self.ledger.find_handle(kind)
        if found is None:
            raise DependencyMissing(kind.value, "no earlier stage recorded one")
        if attribute and not found.attr(attribute):
            raise DependencyMissing(f"{kind.value}.{attribute}", f"missing on {found}")
        return found

    def wait(self, probe: Callable[[], T], description: str, resource_id: str, policy: PollPolicy) -> T:
        return wait_until(probe, description=description, resource_id=resource_id, policy=policy, sleep=self.sleep)


def require(value: Optional[T], what: str, detail: str = "") -> T:
    """Fail fast instead of passing an empty lookup result on.

    Raises:
        DependencyMissing: If ``value`` is None, empty or the literal "None".
    """
    if value is None or value == "" or value == "None" or value == []:
        raise DependencyMissing(what, detail)
    return value


class Stage(ABC):
    """
    Abstract base class for provisioning stages.

    A stage is idempotent: ``probe`` reports whether its resources already
    exist; ``create`` builds whatever is missing and waits until it is ready.
    """

    stage_id: str = ""
    description: str = ""

    @abstractmethod
    def probe(self, ctx: StageContext) -> Optional[list[ResourceHandle]]:
        """
        Look for the stage's resources.

        Returns:
            The handles if everything exists and is ready, None otherwise.
        """

    @abstractmethod
    def create(self, ctx: StageContext) -> list[ResourceHandle]:
        """
        Create missing resources and wait for readiness.

        Returns:
            All handles owned by the stage.
        """

    def resume(self, ctx: StageContext) -> None:
        """Hook for stages already done in the ledger."""

    def discover(self, ctx: StageContext) -> list[ResourceHandle]:
        """
        Find whatever the stage left behind, complete or not.

        Used by cleanup when no ledger exists. The default only reports fully
        provisioned stages.
        """
        return self.probe(ctx) or []

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.stage_id}>"
