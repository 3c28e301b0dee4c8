"""Approval gate for human-gated pipeline stages.

The gate owns the approval_status field of Deployment records:

    Unasked → Pending → (Approved | Rejected)

Both transitions are conditional writes against the store, so concurrent
prompts or decisions for the same deployment resolve to exactly one
winner. Losers get AlreadyAskedError or NoPendingApprovalError.

A successful decision is handed back to the pipeline as a chat_approval
Trigger through the configured trigger sink (normally
StageOrchestrator.advance), which resumes or halts the chain.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence

from src.conveyor.errors import (
    AlreadyAskedError,
    ConditionFailedError,
    DeploymentNotFoundError,
    NoPendingApprovalError,
    UnauthorizedApproverError,
)
from src.conveyor.metrics import ConveyorMetrics
from src.conveyor.notifier import Notification, NotificationKind, Notifier, safe_notify
from src.conveyor.state.models import (
    ApprovalStatus,
    Deployment,
    DeploymentKey,
    Trigger,
    is_valid_approval_transition,
)
from src.conveyor.state.store import DeploymentStore
from src.conveyor.topology import TopologyResolver
from src.conveyor.triggers.models import ApprovalCommand, ApprovalDecision


logger = logging.getLogger(__name__)


TriggerSink = Callable[[Trigger], Awaitable[Any]]

_DECISION_STATUS = {
    ApprovalDecision.APPROVE: ApprovalStatus.APPROVED,
    ApprovalDecision.REJECT: ApprovalStatus.REJECTED,
}


class ApprovalGate:
    """Evaluates and mutates approval state in response to chat commands.

    Attributes:
        store: Deployment record store.
        topology: Resolver used to look up a stage's allowed approvers.
        notifier: Outbound port for approval prompts and rejections.
        metrics: Optional metrics for decisions.

    Example:
        >>> gate = ApprovalGate(store, resolver, notifier)
        >>> gate.set_trigger_sink(orchestrator.advance)
        >>> await gate.request_approval(key)
        >>> await gate.resolve(key, ApprovalDecision.APPROVE, "alice")
        <ApprovalStatus.APPROVED: 'Approved'>
    """

    def __init__(
        self,
        store: DeploymentStore,
        topology: TopologyResolver,
        notifier: Notifier,
        metrics: Optional[ConveyorMetrics] = None,
        trigger_sink: Optional[TriggerSink] = None,
    ):
        self.store = store
        self.topology = topology
        self.notifier = notifier
        self.metrics = metrics
        self._trigger_sink = trigger_sink

    def set_trigger_sink(self, sink: Optional[TriggerSink]) -> None:
        """Set where chat_approval triggers are sent after a decision."""
        self._trigger_sink = sink

    async def request_approval(
        self,
        key: DeploymentKey,
        approvers: Sequence[str] = (),
    ) -> Deployment:
        """Move a deployment from Unasked to Pending and prompt approvers.

        Args:
            key: The deployment to gate.
            approvers: Identities allowed to decide, included in the prompt.

        Returns:
            The updated deployment record.

        Raises:
            DeploymentNotFoundError: If no record exists for the key.
            AlreadyAskedError: If the record is not Unasked, including when
                               a concurrent request won the write.
        """
        current = await self.store.get(key)
        if current is None:
            raise DeploymentNotFoundError(str(key))

        if not is_valid_approval_transition(current.approval_status, ApprovalStatus.PENDING):
            raise AlreadyAskedError(str(key), current.approval_status.value)

        updated = current.evolve(approval_status=ApprovalStatus.PENDING)
        try:
            await self.store.put_if_absent_or_matches(
                updated, {"approval_status": ApprovalStatus.UNASKED}
            )
        except ConditionFailedError as e:
            latest = await self.store.get(key)
            status = latest.approval_status.value if latest else "unknown"
            raise AlreadyAskedError(str(key), status) from e

        logger.info(
            "Approval requested",
            extra={"deployment_id": str(key), "approvers": list(approvers)},
        )

        await safe_notify(
            self.notifier,
            Notification.for_deployment(
                NotificationKind.APPROVAL_REQUESTED,
                updated,
                approvers=list(approvers),
                caused_by=updated.caused_by,
                initiator=updated.trigger.initiator,
            ),
        )
        return updated

    async def resolve(
        self,
        key: DeploymentKey,
        decision: ApprovalDecision,
        approver: str,
    ) -> ApprovalStatus:
        """Apply an approval decision to a pending deployment.

        Records the decision and approver, then emits a chat_approval
        trigger for the deployment. Errors raised while advancing the
        pipeline from that trigger are logged; the decision stands.

        Returns:
            The terminal approval status (Approved or Rejected).

        Raises:
            DeploymentNotFoundError: If no record exists for the key.
            NoPendingApprovalError: If the record is not Pending, including
                                    when a concurrent decision won the write.
            UnauthorizedApproverError: If the stage lists approvers and the
                                       approver is not among them.
        """
        current = await self.store.get(key)
        if current is None:
            raise DeploymentNotFoundError(str(key))

        if current.approval_status != ApprovalStatus.PENDING:
            raise NoPendingApprovalError(str(key), current.approval_status.value)

        topology = await self.topology.resolve(key.org, key.name)
        stage = topology.stage(key.stage_name) if topology is not None else None
        if stage is not None and not stage.may_approve(approver):
            logger.warning(
                "Rejected approval decision from unauthorized approver",
                extra={"deployment_id": str(key), "approver": approver},
            )
            raise UnauthorizedApproverError(str(key), approver)

        status = _DECISION_STATUS[decision]
        updated = current.evolve(
            approval_status=status,
            approved_by=approver,
            decided_at=datetime.now(timezone.utc),
        )
        try:
            await self.store.put_if_absent_or_matches(
                updated, {"approval_status": ApprovalStatus.PENDING}
            )
        except ConditionFailedError as e:
            raise NoPendingApprovalError(str(key)) from e

        logger.info(
            "Approval decision recorded",
            extra={
                "deployment_id": str(key),
                "decision": status.value,
                "approver": approver,
            },
        )

        if self.metrics is not None:
            self.metrics.record_approval(
                f"{key.org}/{key.name}", key.stage_name, decision.value
            )

        if status == ApprovalStatus.REJECTED:
            await safe_notify(
                self.notifier,
                Notification.for_deployment(
                    NotificationKind.DEPLOY_REJECTED,
                    updated,
                    approver=approver,
                ),
            )

        command = ApprovalCommand(key=key, decision=decision, approver=approver)
        await self._emit(command.to_trigger())
        return status

    async def resolve_command(self, command: ApprovalCommand) -> ApprovalStatus:
        """Apply a normalized chat approval command."""
        return await self.resolve(command.key, command.decision, command.approver)

    async def _emit(self, trigger: Trigger) -> None:
        if self._trigger_sink is None:
            logger.debug("No trigger sink configured; dropping chat_approval trigger")
            return

        try:
            await self._trigger_sink(trigger)
        except Exception as e:
            logger.warning(
                "Advancing after approval decision failed: %s",
                str(e),
                extra={
                    "application": trigger.full_name,
                    "stage": trigger.stage_name,
                    "sha": trigger.sha,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
