"""Stage ledger definitions for the Moodle deployer."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class StageStatus(str, Enum):
    """Lifecycle of a provisioning stage."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


class ResourceKind(str, Enum):
    """Kinds of resources the pipeline creates."""

    KEY_PAIR = "key-pair"
    CLUSTER = "cluster"
    SECURITY_GROUP = "security-group"
    DB_SUBNET_GROUP = "db-subnet-group"
    DB_INSTANCE = "db-instance"
    CREDENTIAL = "credential"
    FILESYSTEM = "filesystem"
    MOUNT_TARGET = "mount-target"
    STORAGE_CLASS = "storage-class"
    PVC = "pvc"
    BUCKET = "bucket"
    SERVICE_ACCOUNT = "service-account"
    SECRET = "secret"
    DEPLOYMENT = "deployment"
    SERVICE = "service"
    HELM_RELEASE = "helm-release"
    INGRESS = "ingress"
    HPA = "hpa"
    DNS_RECORD = "dns-record"


class ResourceHandle(BaseModel):
    """Identifier of one provisioned resource."""

    kind: ResourceKind
    id: str
    attributes: dict[str, str] = Field(default_factory=dict)

    def attr(self, key: str, default: str = "") -> str:
        """Get an attribute value."""
        return self.attributes.get(key, default)

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.id}"


class StageState(BaseModel):
    """Persisted record of one stage's progress."""

    stage_id: str
    status: StageStatus = StageStatus.PENDING
    handles: list[ResourceHandle] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    attempts: int = 0
    error: Optional[str] = None


class DeploymentLedger(BaseModel):
    """
    Central record of a deployment.

    Maps stage id to its state and the resource handles it produced. It is
    read on rerun to skip finished stages and by cleanup to know what to
    remove.
    """

    deployment_name: str
    seed: str
    region: str
    cluster_name: str
    account_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    stages: dict[str, StageState] = Field(default_factory=dict)

    def stage(self, stage_id: str) -> StageState:
        """Get the state of a stage, creating a pending record if absent."""
        if stage_id not in self.stages:
            self.stages[stage_id] = StageState(stage_id=stage_id)
        return self.stages[stage_id]

    def is_done(self, stage_id: str) -> bool:
        """Check if a stage completed."""
        state = self.stages.get(stage_id)
        return state is not None and state.status == StageStatus.DONE

    def start_stage(self, stage_id: str) -> StageState:
        """Mark a stage as in progress."""
        state = self.stage(stage_id)
        state.status = StageStatus.IN_PROGRESS
        state.started_at = datetime.utcnow()
        state.finished_at = None
        state.attempts += 1
        state.error = None
        self.touch()
        return state

    def complete_stage(self, stage_id: str, handles: list[ResourceHandle]) -> StageState:
        """Mark a stage as done and record its handles."""
        state = self.stage(stage_id)
        state.status = StageStatus.DONE
        state.handles = list(handles)
        state.finished_at = datetime.utcnow()
        state.error = None
        self.touch()
        return state

    def fail_stage(self, stage_id: str, error: str) -> StageState:
        """Mark a stage as failed."""
        state = self.stage(stage_id)
        state.status = StageStatus.FAILED
        state.finished_at = datetime.utcnow()
        state.error = error
        self.touch()
        return state

    def record_partial(self, stage_id: str, handles: list[ResourceHandle]) -> None:
        """Record handles created so far by a stage that has not finished."""
        state = self.stage(stage_id)
        known = {(h.kind, h.id) for h in state.handles}
        for handle in handles:
            if (handle.kind, handle.id) not in known:
                state.handles.append(handle)
                known.add((handle.kind, handle.id))
        self.touch()

    def all_handles(self) -> list[ResourceHandle]:
        """All handles across stages, in stage order."""
        return [h for state in self.stages.values() for h in state.handles]

    def handles_of_kind(self, kind: ResourceKind) -> list[ResourceHandle]:
        """All handles of the given kind."""
        return [h for h in self.all_handles() if h.kind == kind]

    def find_handle(self, kind: ResourceKind) -> Optional[ResourceHandle]:
        """First handle of the given kind, if any."""
        handles = self.handles_of_kind(kind)
        return handles[0] if handles else None

    def remove_handle(self, handle: ResourceHandle) -> None:
        """Drop a handle after its resource was deleted."""
        for state in self.stages.values():
            remaining = [h for h in state.handles if not (h.kind == handle.kind and h.id == handle.id)]
            if len(remaining) != len(state.handles):
                state.handles = remaining
                state.status = StageStatus.PENDING
                state.finished_at = None
        self.touch()

    def is_empty(self) -> bool:
        """Check whether no resources are recorded."""
        return not self.all_handles()

    def touch(self) -> None:
        self.updated_at = datetime.utcnow()

    def summary(self) -> dict[str, Any]:
        """Compact view of stage statuses."""
        return {stage_id: state.status.value for stage_id, state in self.stages.items()}
