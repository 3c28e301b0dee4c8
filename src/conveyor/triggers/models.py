"""Inbound event models for the trigger normalizer.

This module defines the request models for events that are not GitHub
webhooks, plus the results the normalizer produces besides a Trigger:
- ManualRerunRequest: an operator re-runs one stage for one commit
- ChatCommandRequest / ApprovalCommand: an approval decision from chat
- PullRequestClosed: a tracked pull request was closed

The models use Pydantic for validation, consistent with the state models
in state/models.py.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from src.conveyor.state.models import (
    DeploymentKey,
    Trigger,
    TriggerKind,
    reject_key_separator,
)


class GitHubEventType(str, Enum):
    """GitHub webhook event types (X-GitHub-Event header) we react to."""

    PUSH = "push"
    PULL_REQUEST = "pull_request"
    PING = "ping"


class PullRequestAction(str, Enum):
    """Pull request actions and how they map onto the pipeline.

    Attributes:
        OPENED: Start tracking the PR and run its head commit.
        REOPENED: Same as opened.
        SYNCHRONIZE: New commits were pushed to the PR head.
        CLOSED: Stop tracking the PR. A merge also runs the merge commit
                on the base branch.
    """

    OPENED = "opened"
    REOPENED = "reopened"
    SYNCHRONIZE = "synchronize"
    CLOSED = "closed"


class ApprovalDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class ManualRerunRequest(BaseModel):
    """Operator request to re-run a stage for a specific commit."""

    org: str = Field(
        ...,
        min_length=1,
        description="Organization that owns the application",
    )

    name: str = Field(
        ...,
        min_length=1,
        description="Application name",
    )

    stage: str = Field(
        ...,
        min_length=1,
        description="Stage to re-run",
    )

    sha: str = Field(
        ...,
        min_length=1,
        description="Commit to re-run the stage for",
    )

    requested_by: Optional[str] = Field(
        default=None,
        description="Identity of the operator requesting the re-run",
    )

    @field_validator("org", "name", "stage", "sha")
    @classmethod
    def validate_key_part(cls, v: str) -> str:
        return reject_key_separator(v)


class ChatCommandRequest(BaseModel):
    """Raw approval command as posted by the chat integration."""

    deployment_key: str = Field(
        ...,
        min_length=1,
        description="Deployment id in format Org#Name#StageName#Sha",
    )

    decision: str = Field(
        ...,
        description="approve or reject",
    )

    approver: str = Field(
        ...,
        min_length=1,
        description="Chat identity of the person deciding",
    )


class ApprovalCommand(BaseModel):
    """A validated approval decision for one deployment.

    Attributes:
        key: The deployment the decision applies to.
        decision: Approve or reject.
        approver: Chat identity of the person deciding.
        received_at: When the command was normalized (UTC).
    """

    key: DeploymentKey
    decision: ApprovalDecision
    approver: str = Field(..., min_length=1)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_trigger(self) -> Trigger:
        """Build the chat_approval trigger that resumes the paused stage."""
        return Trigger(
            kind=TriggerKind.CHAT_APPROVAL,
            org=self.key.org,
            name=self.key.name,
            sha=self.key.sha,
            stage_name=self.key.stage_name,
            initiator=self.approver,
            timestamp=self.received_at,
        )


class PullRequestClosed(BaseModel):
    """A pull request was closed; its number stops being tracked.

    Attributes:
        merged: Whether the pull request was merged.
        merge: For merged pull requests, a push trigger for the merge commit
               on the base branch that carries the head branch as its
               source, so merge rules with from_branch can match it.
    """

    org: str
    name: str
    pr_number: int = Field(..., gt=0)
    merged: bool = False
    merge: Optional[Trigger] = None
