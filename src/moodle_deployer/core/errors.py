"""Error taxonomy for provisioning and cleanup."""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from moodle_deployer.core.state import DeploymentLedger


class DeployerError(Exception):
    """Base class for all deployer errors."""


class PlanValidationError(DeployerError):
    """Configuration cannot produce a valid deployment plan."""


class DependencyMissing(DeployerError):
    """A lookup the pipeline depends on returned nothing."""

    def __init__(self, what: str, detail: str = ""):
        self.what = what
        self.detail = detail
        message = f"Required dependency not found: {what}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class ResourceConflict(DeployerError):
    """The resource being created already exists."""

    def __init__(self, kind: str, resource_id: str, code: str = ""):
        self.kind = kind
        self.resource_id = resource_id
        self.code = code
        super().__init__(f"{kind} {resource_id} already exists")


class StageTimeout(DeployerError):
    """A readiness wait exceeded its bound."""

    def __init__(self, description: str, resource_id: str, attempts: int, elapsed: float):
        self.description = description
        self.resource_id = resource_id
        self.attempts = attempts
        self.elapsed = elapsed
        super().__init__(
            f"Timed out waiting for {description} ({resource_id}) "
            f"after {attempts} attempts / {elapsed:.0f}s"
        )


class ExternalApiError(DeployerError):
    """An AWS API call or CLI invocation failed."""

    def __init__(
        self,
        operation: str,
        message: str,
        code: Optional[str] = None,
        transient: bool = False,
    ):
        self.operation = operation
        self.code = code
        self.transient = transient
        label = f"{operation} [{code}]" if code else operation
        super().__init__(f"{label}: {message}")


class StageError(DeployerError):
    """A pipeline stage failed; carries the partial ledger for reporting."""

    def __init__(self, stage_id: str, cause: BaseException, ledger: "DeploymentLedger"):
        self.stage_id = stage_id
        self.cause = cause
        self.ledger = ledger
        super().__init__(f"Stage '{stage_id}' failed: {cause}")


def is_transient(error: BaseException) -> bool:
    """Whether an error is worth retrying."""
    return isinstance(error, ExternalApiError) and error.transient
