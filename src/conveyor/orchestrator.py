"""Stage orchestrator driving commits through pipeline stages.

Consumes a Trigger, resolves the application's topology and advances the
commit stage by stage:

    trigger → (approval gate) → executor → record result → next stage

The orchestrator holds no state between calls. All coordination between
concurrent advances goes through the store's conditional writes; the
is_deploying flag is the per-stage mutex.

Source:
- src/conveyor/topology.py (TopologyResolver)
- src/conveyor/state/store.py (DeploymentStore)
- src/conveyor/approval.py (ApprovalGate)
- src/conveyor/executor.py (Executor)
- src/conveyor/notifier.py (Notifier)
"""

import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, Tuple

from src.conveyor.approval import ApprovalGate
from src.conveyor.errors import (
    AlreadyAskedError,
    AlreadyInFlightError,
    ConcurrencyConflictError,
    ConditionFailedError,
    ConveyorError,
    DeploymentNotFoundError,
    ExecutorError,
    ExecutorTimeoutError,
    ExecutorTransientError,
    PredecessorNotSucceededError,
    StoreUnavailableError,
    UnknownApplicationError,
    UnknownStageError,
)
from src.conveyor.executor import ArtifactLocation, ExecutionResult, Executor, artifact_location
from src.conveyor.metrics import ConveyorMetrics
from src.conveyor.notifier import Notification, NotificationKind, Notifier, safe_notify
from src.conveyor.state.models import (
    ApprovalStatus,
    Deployment,
    DeploymentKey,
    FailureCause,
    Trigger,
    TriggerKind,
    is_deployable,
)
from src.conveyor.state.store import DeploymentStore
from src.conveyor.topology import PipelineTopology, StageDefinition, TopologyResolver


logger = logging.getLogger(__name__)


class AdvanceOutcome(str, Enum):
    """Where an advance() call left the pipeline for the commit.

    Attributes:
        IGNORED: The trigger matched none of the application's trigger rules.
        AWAITING_APPROVAL: A gated stage is waiting for a chat decision.
        REJECTED: An approver rejected a stage; the chain halted.
        ALREADY_COMPLETE: The last stage had already succeeded; nothing ran.
        FAILED: A stage failed (now or earlier); the chain halted.
        SUCCEEDED: The last stage executed and succeeded.
    """

    IGNORED = "ignored"
    AWAITING_APPROVAL = "awaiting_approval"
    REJECTED = "rejected"
    ALREADY_COMPLETE = "already_complete"
    FAILED = "failed"
    SUCCEEDED = "succeeded"


StepResult = Tuple[AdvanceOutcome, Optional[Trigger]]


class StageOrchestrator:
    """Advances commits through an application's ordered stages.

    Accepts all dependencies via constructor injection.

    Attributes:
        store: Deployment record store (conditional writes).
        topology: Resolves applications to ordered stages.
        gate: Approval gate for gated stages.
        executor: Build/deploy executor port.
        notifier: Outbound notifications.
        metrics: Optional Prometheus metrics.
        artifact_bucket: Bucket passed to the executor for build outputs.
        execution_timeout: Seconds before an executor call is abandoned.
        max_retries: Retries for ExecutorTransientError.
        backoff_base: Base delay for exponential backoff between retries.
        backoff_max: Cap for the backoff delay.
        stale_after: Seconds after its last update when an in-flight record
                     is treated as abandoned by a crashed process: every
                     retry at the full timeout and backoff, plus stale_grace.
    """

    def __init__(
        self,
        store: DeploymentStore,
        topology: TopologyResolver,
        gate: ApprovalGate,
        executor: Executor,
        notifier: Notifier,
        metrics: Optional[ConveyorMetrics] = None,
        artifact_bucket: Optional[str] = None,
        execution_timeout: float = 1800.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        stale_grace: float = 300.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.topology = topology
        self.gate = gate
        self.executor = executor
        self.notifier = notifier
        self.metrics = metrics
        self.artifact_bucket = artifact_bucket
        self.execution_timeout = execution_timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.stale_after = (
            (max_retries + 1) * (execution_timeout + backoff_max) + stale_grace
        )
        self._sleep = sleep

    async def advance(self, trigger: Trigger) -> AdvanceOutcome:
        """Advance a commit through its pipeline from the trigger's stage.

        Stages run strictly in order. Each success derives a trigger for the
        next stage; the chain stops at a gate, a rejection, a failure or the
        last stage.

        Returns:
            The outcome at the stage where the chain stopped.

        Raises:
            UnknownApplicationError: No topology for (org, name).
            UnknownStageError: The trigger names a stage not in the topology.
            PredecessorNotSucceededError: The previous stage has not succeeded
                                          for this commit.
            AlreadyInFlightError: The target record is already deploying.
            ConcurrencyConflictError: Another advance won the mutex write.
            StoreUnavailableError: The store could not confirm a write.
        """
        logger.info(
            "Advancing pipeline",
            extra={
                "application": trigger.full_name,
                "sha": trigger.sha,
                "trigger_kind": trigger.kind.value,
                "stage": trigger.stage_name,
            },
        )

        current: Optional[Trigger] = trigger
        outcome = AdvanceOutcome.IGNORED
        try:
            while current is not None:
                outcome, current = await self._advance_stage(current)
        except ConveyorError as e:
            self._record_advance(type(e).__name__)
            raise

        self._record_advance(outcome.value)
        return outcome

    async def _advance_stage(self, trigger: Trigger) -> StepResult:
        """Process one stage and return the trigger for the next, if any."""
        topology = await self.topology.resolve(trigger.org, trigger.name)
        if topology is None:
            raise UnknownApplicationError(trigger.org, trigger.name)

        if trigger.stage_name is None:
            stage, trigger = self._select_entry(topology, trigger)
            if stage is None:
                logger.info(
                    "Trigger matched no trigger rule; ignoring",
                    extra={
                        "application": trigger.full_name,
                        "sha": trigger.sha,
                        "ref": trigger.ref,
                    },
                )
                return AdvanceOutcome.IGNORED, None
        else:
            stage = topology.stage(trigger.stage_name)
            if stage is None:
                raise UnknownStageError(trigger.org, trigger.name, trigger.stage_name)

        key = DeploymentKey(
            org=trigger.org, name=trigger.name, stage_name=stage.name, sha=trigger.sha
        )
        existing = await self.store.get(key)

        # Runs re-entering a stage keep the route chosen when the commit
        # entered the pipeline.
        route = trigger.route
        if route is None and existing is not None and existing.trigger.route is not None:
            route = existing.trigger.route
            trigger = trigger.model_copy(update={"route": route})

        caused_by = await self._check_predecessor(topology, stage, trigger.sha, route)

        if existing is None:
            if trigger.kind == TriggerKind.CHAT_APPROVAL:
                raise DeploymentNotFoundError(str(key))
            return await self._start_new(topology, stage, key, trigger, caused_by)

        if existing.is_deploying:
            if not self._is_stale(existing):
                logger.warning(
                    "Deployment already in flight",
                    extra={"deployment_id": str(key), "trigger_kind": trigger.kind.value},
                )
                raise AlreadyInFlightError(str(key))
            existing = await self._reclaim(existing)

        if trigger.kind != TriggerKind.MANUAL:
            if existing.was_success is True:
                logger.info(
                    "Stage already succeeded for commit; continuing chain",
                    extra={"deployment_id": str(key)},
                )
                return self._next(
                    topology, existing, AdvanceOutcome.ALREADY_COMPLETE, route
                )
            if existing.was_success is False:
                logger.info(
                    "Stage already failed for commit; chain stays halted",
                    extra={
                        "deployment_id": str(key),
                        "failure_cause": existing.failure_cause.value
                        if existing.failure_cause
                        else None,
                    },
                )
                return AdvanceOutcome.FAILED, None

        status = existing.approval_status
        if status == ApprovalStatus.REJECTED:
            return AdvanceOutcome.REJECTED, None
        if not is_deployable(status):
            return await self._await_approval(stage, existing)

        await self._expire_stale_holder(key)
        started = existing.evolve(
            is_deploying=True,
            was_success=None,
            failure_cause=None,
            attempts=existing.attempts + 1,
            trigger=trigger if trigger.kind == TriggerKind.MANUAL else existing.trigger,
        )
        try:
            await self._write(
                started,
                {"is_deploying": False, "attempts": existing.attempts},
            )
        except ConditionFailedError as e:
            logger.warning(
                "Lost race to start deployment",
                extra={"deployment_id": str(key), "error": str(e)},
            )
            raise ConcurrencyConflictError(str(key), e.message) from e

        return await self._execute(topology, started)

    def _select_entry(
        self, topology: PipelineTopology, trigger: Trigger
    ) -> Tuple[Optional[StageDefinition], Trigger]:
        """Pick the first stage for a trigger that names none.

        Push and PR triggers are routed by the trigger rules; a route
        covering the whole chain is left implicit.
        """
        if trigger.kind not in (TriggerKind.PUSH, TriggerKind.PR_UPDATE):
            return topology.entry_stage, trigger

        route = topology.route_for(trigger)
        if not route:
            return None, trigger
        if route != tuple(stage.name for stage in topology.stages):
            trigger = trigger.model_copy(update={"route": route})
        return topology.stage(route[0]), trigger

    async def _check_predecessor(
        self,
        topology: PipelineTopology,
        stage: StageDefinition,
        sha: str,
        route: Optional[Sequence[str]] = None,
    ) -> Optional[str]:
        """Return the predecessor's deployment id, or None for the first stage.

        Raises:
            PredecessorNotSucceededError: If the predecessor has no successful
                                          record for the commit.
        """
        predecessor = topology.predecessor(stage.name, route)
        if predecessor is None:
            return None

        key = DeploymentKey(
            org=topology.org, name=topology.name, stage_name=predecessor.name, sha=sha
        )
        record = await self.store.get(key)
        if record is None or record.was_success is not True:
            raise PredecessorNotSucceededError(stage.name, predecessor.name, sha)
        return str(key)

    def _is_stale(self, deployment: Deployment) -> bool:
        """True when an in-flight record outlived every possible execution."""
        updated_at = deployment.updated_at
        if updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=timezone.utc)
        age = (datetime.now(timezone.utc) - updated_at).total_seconds()
        return age > self.stale_after

    async def _reclaim(self, deployment: Deployment) -> Deployment:
        """Release the mutex of a crashed execution and record it as timed out.

        Raises:
            ConcurrencyConflictError: If the record changed since it was read.
        """
        key = deployment.key
        expired = deployment.evolve(
            is_deploying=False,
            was_success=False,
            failure_cause=FailureCause.EXECUTOR_TIMEOUT,
        )
        try:
            await self._write(
                expired,
                {
                    "is_deploying": True,
                    "attempts": deployment.attempts,
                    "updated_at": deployment.updated_at,
                },
            )
        except ConditionFailedError as e:
            logger.warning(
                "Lost race to reclaim stale deployment",
                extra={"deployment_id": str(key), "error": str(e)},
            )
            raise ConcurrencyConflictError(str(key), e.message) from e

        logger.warning(
            "Reclaimed stale in-flight deployment",
            extra={
                "deployment_id": str(key),
                "last_updated": deployment.updated_at.isoformat(),
                "stale_after": self.stale_after,
            },
        )
        await safe_notify(
            self.notifier,
            Notification.for_deployment(
                NotificationKind.DEPLOY_FAILED,
                expired,
                failure_cause=FailureCause.EXECUTOR_TIMEOUT.value,
                detail="Execution never reported a result",
            ),
        )
        return expired

    async def _expire_stale_holder(self, key: DeploymentKey) -> None:
        """Reclaim a stale record of another commit holding the stage mutex."""
        holder = await self.store.get_in_flight(key.org, key.name, key.stage_name)
        if holder is not None and holder.sha != key.sha and self._is_stale(holder):
            await self._reclaim(holder)

    async def _start_new(
        self,
        topology: PipelineTopology,
        stage: StageDefinition,
        key: DeploymentKey,
        trigger: Trigger,
        caused_by: Optional[str],
    ) -> StepResult:
        """Create the first record for (stage, sha).

        Ungated stages are created already deploying, so the insert doubles
        as the mutex acquisition. Gated stages are created Unasked and
        handed to the approval gate.
        """
        artifacts = self._artifacts(key)
        deployment = Deployment(
            org=key.org,
            name=key.name,
            stage_name=key.stage_name,
            sha=key.sha,
            trigger=trigger,
            caused_by=caused_by,
            artifact_bucket=artifacts.bucket,
            artifact_folder=artifacts.folder,
            approval_status=(
                ApprovalStatus.UNASKED
                if stage.approval_required
                else ApprovalStatus.NOT_NEEDED
            ),
            is_deploying=not stage.approval_required,
            attempts=0 if stage.approval_required else 1,
        )

        if not stage.approval_required:
            await self._expire_stale_holder(key)

        try:
            await self._write(deployment, None)
        except ConditionFailedError as e:
            logger.warning(
                "Lost race to create deployment",
                extra={"deployment_id": str(key), "error": str(e)},
            )
            raise ConcurrencyConflictError(str(key), e.message) from e

        logger.info(
            "Created deployment",
            extra={
                "deployment_id": str(key),
                "approval_status": deployment.approval_status.value,
                "caused_by": caused_by,
            },
        )

        if stage.approval_required:
            return await self._await_approval(stage, deployment)
        return await self._execute(topology, deployment)

    async def _await_approval(
        self, stage: StageDefinition, deployment: Deployment
    ) -> StepResult:
        """Prompt for approval if nobody has been asked yet."""
        if deployment.approval_status == ApprovalStatus.UNASKED:
            try:
                await self.gate.request_approval(deployment.key, stage.approvers)
            except AlreadyAskedError:
                logger.debug(
                    "Approval already requested",
                    extra={"deployment_id": deployment.deployment_id},
                )
        return AdvanceOutcome.AWAITING_APPROVAL, None

    async def _execute(
        self, topology: PipelineTopology, deployment: Deployment
    ) -> StepResult:
        """Run the executor for a deployment that holds the stage mutex.

        Executor errors become a terminal unsuccessful record plus a
        deploy_failed notification; they never propagate.
        """
        key = deployment.key
        application = f"{key.org}/{key.name}"
        artifacts = ArtifactLocation(
            bucket=deployment.artifact_bucket,
            folder=deployment.artifact_folder or self._artifacts(key).folder,
        )

        await safe_notify(
            self.notifier,
            Notification.for_deployment(
                NotificationKind.DEPLOY_STARTED,
                deployment,
                attempt=deployment.attempts,
                trigger_kind=deployment.trigger.kind.value,
            ),
        )

        failure_cause: Optional[FailureCause] = None
        detail: Optional[str] = None
        result: Optional[ExecutionResult] = None
        started = time.monotonic()
        try:
            result = await self._run_executor(deployment, artifacts)
            if not result.success:
                failure_cause = FailureCause.EXECUTOR_FAILED
                detail = result.detail
        except ExecutorTimeoutError as e:
            failure_cause = FailureCause.EXECUTOR_TIMEOUT
            detail = e.message
            logger.error(
                "Executor timed out",
                extra={"deployment_id": str(key), "timeout": e.timeout_seconds},
            )
        except ExecutorError as e:
            failure_cause = FailureCause.EXECUTOR_ERROR
            detail = e.message
            logger.error(
                "Executor error",
                extra={"deployment_id": str(key), "error": e.message},
            )
        except Exception as e:
            failure_cause = FailureCause.EXECUTOR_ERROR
            detail = str(e)
            logger.exception(
                "Unexpected executor failure",
                extra={"deployment_id": str(key)},
            )
        finally:
            if self.metrics is not None:
                self.metrics.record_executor_duration(
                    application, key.stage_name, time.monotonic() - started
                )

        success = failure_cause is None
        finished = deployment.evolve(
            is_deploying=False,
            was_success=success,
            failure_cause=failure_cause,
            artifact_bucket=(result.artifact_bucket if result else None)
            or deployment.artifact_bucket,
            artifact_folder=(result.artifact_folder if result else None)
            or deployment.artifact_folder,
        )

        try:
            await self._write(
                finished,
                {"is_deploying": True, "attempts": deployment.attempts},
                execution_ended=True,
            )
        except ConditionFailedError as e:
            # The record changed while we held the mutex; leave it for an operator.
            await self._alert(
                deployment,
                f"Record changed during execution: {e.message}",
                execution_ended=True,
            )
            raise ConcurrencyConflictError(str(key), e.message) from e

        if not success:
            await safe_notify(
                self.notifier,
                Notification.for_deployment(
                    NotificationKind.DEPLOY_FAILED,
                    finished,
                    failure_cause=failure_cause.value if failure_cause else None,
                    detail=detail,
                ),
            )
            return AdvanceOutcome.FAILED, None

        await safe_notify(
            self.notifier,
            Notification.for_deployment(
                NotificationKind.DEPLOY_SUCCEEDED,
                finished,
                artifact_bucket=finished.artifact_bucket,
                artifact_folder=finished.artifact_folder,
            ),
        )
        return self._next(topology, finished, AdvanceOutcome.SUCCEEDED)

    async def _run_executor(
        self, deployment: Deployment, artifacts: ArtifactLocation
    ) -> ExecutionResult:
        """Call the executor with a timeout, retrying transient errors.

        Raises:
            ExecutorTimeoutError: If an attempt exceeds execution_timeout.
            ExecutorTransientError: If every retry failed transiently.
            ExecutorError: For non-transient executor failures.
        """
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(
                    self.executor.execute(
                        deployment.org,
                        deployment.name,
                        deployment.stage_name,
                        deployment.sha,
                        artifacts,
                    ),
                    timeout=self.execution_timeout,
                )
            except asyncio.TimeoutError as e:
                raise ExecutorTimeoutError(
                    deployment.deployment_id, self.execution_timeout
                ) from e
            except ExecutorTransientError as e:
                if attempt >= self.max_retries:
                    raise
                delay = self._calculate_backoff(attempt)
                logger.warning(
                    "Transient executor error, retrying",
                    extra={
                        "deployment_id": deployment.deployment_id,
                        "attempt": attempt + 1,
                        "max_retries": self.max_retries,
                        "delay": delay,
                        "error": e.message,
                    },
                )
                await self._sleep(delay)
                attempt += 1

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff with full jitter.

        Args:
            attempt: The current retry attempt (0-indexed).
        """
        exponential_delay = self.backoff_base * (2 ** attempt)
        capped_delay = min(exponential_delay, self.backoff_max)
        return random.uniform(0, capped_delay)

    def _next(
        self,
        topology: PipelineTopology,
        deployment: Deployment,
        outcome: AdvanceOutcome,
        route: Optional[Sequence[str]] = None,
    ) -> StepResult:
        """Derive the trigger for the stage after a successful one."""
        if route is None:
            route = deployment.trigger.route
        successor = topology.successor(deployment.stage_name, route)
        if successor is None:
            logger.info(
                "Pipeline complete for commit",
                extra={
                    "application": f"{deployment.org}/{deployment.name}",
                    "sha": deployment.sha,
                },
            )
            return outcome, None
        return outcome, deployment.trigger.derive(
            successor.name,
            deployment.deployment_id,
            route=tuple(route) if route is not None else None,
        )

    def _artifacts(self, key: DeploymentKey) -> ArtifactLocation:
        return artifact_location(self.artifact_bucket, key.org, key.name, key.sha)

    async def _write(
        self,
        deployment: Deployment,
        expected: Optional[Mapping[str, Any]],
        execution_ended: bool = False,
    ) -> None:
        """Conditional write that alerts an operator when it cannot be confirmed.

        An unconfirmed write is treated as not applied and is not retried.
        """
        try:
            await self.store.put_if_absent_or_matches(deployment, expected)
        except StoreUnavailableError as e:
            await self._alert(deployment, e.message, execution_ended)
            raise

    async def _alert(
        self, deployment: Deployment, reason: str, execution_ended: bool = False
    ) -> None:
        """Ask an operator to inspect a record whose state is unconfirmed.

        execution_ended marks alerts raised after the executor returned, so
        observers tracking running executions can count this one as over.
        """
        logger.error(
            "Deployment state could not be confirmed",
            extra={"deployment_id": deployment.deployment_id, "reason": reason},
        )
        await safe_notify(
            self.notifier,
            Notification.for_deployment(
                NotificationKind.OPERATOR_ALERT,
                deployment,
                reason=reason,
                failure_cause=FailureCause.STORE_UNAVAILABLE.value,
                is_deploying=deployment.is_deploying,
                execution_ended=execution_ended,
            ),
        )

    def _record_advance(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_advance(outcome)
