"""Error taxonomy for the deployment pipeline orchestrator.

Every error raised by the core derives from ConveyorError so callers at the
service boundary can classify failures without inspecting transport details:

- Store errors: ConditionFailedError, StoreUnavailableError
- Orchestrator errors: UnknownApplicationError, UnknownStageError,
  PredecessorNotSucceededError, AlreadyInFlightError, ConcurrencyConflictError
- Approval gate errors: AlreadyAskedError, NoPendingApprovalError,
  DeploymentNotFoundError, UnauthorizedApproverError
- Executor errors: ExecutorTransientError, ExecutorTimeoutError

AlreadyInFlightError, ConcurrencyConflictError and the gate errors are
expected race outcomes; they are reported to the caller as rejected requests
rather than failures.
"""

from typing import Optional


class ConveyorError(Exception):
    """Base exception for all orchestrator errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# =============================================================================
# Store errors
# =============================================================================


class StoreError(ConveyorError):
    """Base class for Deployment Record Store errors."""


class ConditionFailedError(StoreError):
    """Raised when a conditional write finds an unexpected prior value.

    Attributes:
        key: The record key the write targeted.
        expected: The expected prior field values (None for put-if-absent).
    """

    def __init__(
        self,
        key: str,
        expected: Optional[dict] = None,
        message: Optional[str] = None,
    ):
        self.key = key
        self.expected = expected
        if message is None:
            if expected is None:
                message = f"Record already exists: {key}"
            else:
                message = f"Condition failed for {key}: expected {expected}"
        super().__init__(message)


class StoreUnavailableError(StoreError):
    """Raised when the store cannot confirm an operation.

    Any mutation that raised this error must be treated as not applied and
    must not be retried blindly.

    Attributes:
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        self.original_error = original_error
        super().__init__(message)


# =============================================================================
# Orchestrator errors
# =============================================================================


class OrchestratorError(ConveyorError):
    """Base class for errors raised by StageOrchestrator.advance()."""


class UnknownApplicationError(OrchestratorError):
    """Raised when no topology exists for (org, name)."""

    def __init__(self, org: str, name: str):
        self.org = org
        self.name = name
        super().__init__(f"Unknown application: {org}/{name}")


class UnknownStageError(OrchestratorError):
    """Raised when a trigger names a stage that the topology does not define."""

    def __init__(self, org: str, name: str, stage_name: str):
        self.org = org
        self.name = name
        self.stage_name = stage_name
        super().__init__(f"Unknown stage {stage_name!r} for application {org}/{name}")


class PredecessorNotSucceededError(OrchestratorError):
    """Raised when a non-entry stage is triggered before its predecessor succeeded."""

    def __init__(self, stage_name: str, predecessor: str, sha: str):
        self.stage_name = stage_name
        self.predecessor = predecessor
        self.sha = sha
        super().__init__(
            f"Stage {stage_name!r} cannot start for {sha}: "
            f"predecessor {predecessor!r} has not succeeded"
        )


class AlreadyInFlightError(OrchestratorError):
    """Raised when a deployment for the key is already deploying."""

    def __init__(self, deployment_id: str):
        self.deployment_id = deployment_id
        super().__init__(f"Deployment already in flight: {deployment_id}")


class ConcurrencyConflictError(OrchestratorError):
    """Raised when the mutex write loses a race with another advance."""

    def __init__(self, deployment_id: str, detail: Optional[str] = None):
        self.deployment_id = deployment_id
        message = f"Concurrent update detected for {deployment_id}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


# =============================================================================
# Approval gate errors
# =============================================================================


class GateError(ConveyorError):
    """Base class for Approval Gate errors."""


class DeploymentNotFoundError(GateError):
    """Raised when a gate operation targets a deployment that does not exist."""

    def __init__(self, deployment_id: str):
        self.deployment_id = deployment_id
        super().__init__(f"Deployment not found: {deployment_id}")


class AlreadyAskedError(GateError):
    """Raised when approval was already requested for the deployment."""

    def __init__(self, deployment_id: str, status: str):
        self.deployment_id = deployment_id
        self.status = status
        super().__init__(
            f"Approval already requested for {deployment_id} (status: {status})"
        )


class NoPendingApprovalError(GateError):
    """Raised when a decision arrives for a deployment that is not pending."""

    def __init__(self, deployment_id: str, status: Optional[str] = None):
        self.deployment_id = deployment_id
        self.status = status
        message = f"No pending approval for {deployment_id}"
        if status:
            message += f" (status: {status})"
        super().__init__(message)


class UnauthorizedApproverError(GateError):
    """Raised when the approver is not in the stage's approver list."""

    def __init__(self, deployment_id: str, approver: str):
        self.deployment_id = deployment_id
        self.approver = approver
        super().__init__(f"{approver} may not approve {deployment_id}")


# =============================================================================
# Executor errors
# =============================================================================


class ExecutorError(ConveyorError):
    """Base class for Build/Deploy Executor errors."""


class ExecutorTransientError(ExecutorError):
    """Raised by executors for failures that are worth retrying."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ExecutorTimeoutError(ExecutorError):
    """Raised when an execution exceeds its configured timeout."""

    def __init__(self, deployment_id: str, timeout_seconds: float):
        self.deployment_id = deployment_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Execution of {deployment_id} timed out after {timeout_seconds}s"
        )
