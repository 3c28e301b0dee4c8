"""Deployment pipeline state models.

This module defines the persisted data model for the orchestrator:
- ApprovalStatus: Approval gate state of a stage deployment
- FailureCause: Classified reason a deployment attempt failed
- TriggerKind / Trigger: Normalized cause of a pipeline run
- DeploymentKey / Deployment: One attempt to move a commit through a stage
- Account / StageConfig / TriggerRule / Application: A deployable unit
- APPROVAL_TRANSITIONS: Map defining allowed approval status transitions

Store keys are bit-exact with the Deployments and Applications tables:
- Applications hash key: "{org}#{name}"
- Deployments hash key: "{org}#{name}#{stage_name}", range key: sha

The models use Pydantic for validation, consistent with the request models
in triggers/models.py and the settings in config.py.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


KEY_SEPARATOR = "#"

PR_STAGE_PREFIX = "pr-"

# Semantic version tags, optionally prefixed with "v" (e.g. v1.2.3-rc.1)
SEMVER_PATTERN = (
    r"v?(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def reject_key_separator(value: str) -> str:
    if KEY_SEPARATOR in value:
        raise ValueError(f"value cannot contain {KEY_SEPARATOR!r}: {value}")
    if not value.strip():
        raise ValueError("value cannot be blank")
    return value


def application_hash_key(org: str, name: str) -> str:
    """Build the Applications table hash key ("{org}#{name}")."""
    return f"{org}{KEY_SEPARATOR}{name}"


def deployment_hash_key(org: str, name: str, stage_name: str) -> str:
    """Build the Deployments table hash key ("{org}#{name}#{stage_name}")."""
    return KEY_SEPARATOR.join((org, name, stage_name))


class ApprovalStatus(str, Enum):
    """Approval state of a stage deployment.

    Stage Flow:
        Unasked → Pending → (Approved | Rejected)

    Stages without an approval requirement are created as NotNeeded and
    never pass through Pending.

    Attributes:
        PENDING: A prompt was issued; waiting for a chat decision.
        NOT_NEEDED: The stage does not require approval.
        APPROVED: Someone approved the deployment (terminal).
        REJECTED: Someone rejected the deployment (terminal).
        UNASKED: Default for gated stages before a prompt is issued.
    """

    PENDING = "Pending"
    NOT_NEEDED = "NotNeeded"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    UNASKED = "Unasked"


class FailureCause(str, Enum):
    """Why a deployment attempt was recorded as unsuccessful."""

    EXECUTOR_FAILED = "executor_failed"
    EXECUTOR_TIMEOUT = "executor_timeout"
    EXECUTOR_ERROR = "executor_error"
    STORE_UNAVAILABLE = "store_unavailable"


class TriggerKind(str, Enum):
    """Source of a pipeline run.

    Attributes:
        PUSH: A commit was pushed to a branch or a tag was pushed.
        PR_UPDATE: A pull request was opened, reopened or synchronized.
        MANUAL: An operator re-ran a specific stage for a specific commit.
        CHAT_APPROVAL: An approval decision resumed a paused pipeline.
    """

    PUSH = "push"
    PR_UPDATE = "pr_update"
    MANUAL = "manual"
    CHAT_APPROVAL = "chat_approval"


# Valid approval status transitions
#
# NOT_NEEDED, APPROVED and REJECTED are terminal: a decision is applied
# exactly once and a stage without an approval requirement never asks.
APPROVAL_TRANSITIONS: Dict[ApprovalStatus, List[ApprovalStatus]] = {
    ApprovalStatus.UNASKED: [ApprovalStatus.PENDING],
    ApprovalStatus.PENDING: [ApprovalStatus.APPROVED, ApprovalStatus.REJECTED],
    ApprovalStatus.NOT_NEEDED: [],
    ApprovalStatus.APPROVED: [],
    ApprovalStatus.REJECTED: [],
}

DEPLOYABLE_STATUSES = frozenset({ApprovalStatus.NOT_NEEDED, ApprovalStatus.APPROVED})


def is_valid_approval_transition(
    from_status: ApprovalStatus, to_status: ApprovalStatus
) -> bool:
    """Check if an approval status transition is valid.

    Example:
        >>> is_valid_approval_transition(ApprovalStatus.UNASKED, ApprovalStatus.PENDING)
        True
        >>> is_valid_approval_transition(ApprovalStatus.REJECTED, ApprovalStatus.APPROVED)
        False
    """
    return to_status in APPROVAL_TRANSITIONS.get(from_status, [])


def is_deployable(status: ApprovalStatus) -> bool:
    """Return True when a deployment with this status may execute."""
    return status in DEPLOYABLE_STATUSES


class Trigger(BaseModel):
    """Normalized cause of a pipeline run.

    Triggers are produced by the Trigger Normalizer from raw events and by
    the orchestrator itself when a stage succeeds (derived triggers carry
    caused_by). Two triggers are equivalent when every field other than
    timestamp matches; re-normalizing the same push yields an equivalent
    trigger.

    Attributes:
        kind: The source of the run.
        org: Organization (repository owner).
        name: Application name (repository name).
        sha: Commit identifier.
        stage_name: Stage the trigger targets, or None for the entry stage.
        timestamp: When the trigger was produced (UTC).
        ref: Git ref for push triggers ("refs/heads/main", "refs/tags/v1.0.0").
        source_branch: Branch the commit came from, for pull request updates
                       and merged pull requests.
        pr_number: Pull request number for pr_update triggers.
        caused_by: Deployment id of the upstream stage for derived triggers.
        initiator: Identity of the pusher, operator or approver.
        route: Ordered stage names this run deploys to, chosen from the
               trigger rules when the run entered the pipeline. None means
               every stage of the application.
    """

    model_config = ConfigDict(frozen=True)

    kind: TriggerKind
    org: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    sha: str = Field(..., min_length=1)
    stage_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    ref: Optional[str] = None
    source_branch: Optional[str] = None
    pr_number: Optional[int] = Field(default=None, gt=0)
    caused_by: Optional[str] = None
    initiator: Optional[str] = None
    route: Optional[Tuple[str, ...]] = None

    @property
    def full_name(self) -> str:
        return f"{self.org}/{self.name}"

    @property
    def dedupe_key(self) -> Tuple[Any, ...]:
        """Identity of the trigger with the timestamp excluded."""
        return (
            self.kind,
            self.org,
            self.name,
            self.sha,
            self.stage_name,
            self.ref,
            self.source_branch,
            self.pr_number,
            self.caused_by,
            self.initiator,
            self.route,
        )

    def is_equivalent(self, other: "Trigger") -> bool:
        return self.dedupe_key == other.dedupe_key

    def derive(
        self,
        stage_name: str,
        caused_by: str,
        route: Optional[Tuple[str, ...]] = None,
    ) -> "Trigger":
        """Build the trigger for the next stage after this one succeeded.

        The derived trigger keeps this trigger's kind, except that a manual
        re-run only forces its own stage: downstream stages receive a push
        trigger and follow the normal idempotence rules. A given route
        replaces the inherited one.
        """
        kind = TriggerKind.PUSH if self.kind == TriggerKind.MANUAL else self.kind
        update: Dict[str, Any] = {
            "kind": kind,
            "stage_name": stage_name,
            "caused_by": caused_by,
            "timestamp": _utcnow(),
        }
        if route is not None:
            update["route"] = tuple(route)
        return self.model_copy(update=update)


class DeploymentKey(BaseModel):
    """Primary key of a Deployment record.

    The string form "{org}#{name}#{stage_name}#{sha}" is the deployment id
    used in chat commands and in Deployment.caused_by.
    """

    model_config = ConfigDict(frozen=True)

    org: str
    name: str
    stage_name: str
    sha: str

    @field_validator("org", "name", "stage_name", "sha")
    @classmethod
    def validate_key_part(cls, v: str) -> str:
        return reject_key_separator(v)

    @property
    def hash_key(self) -> str:
        return deployment_hash_key(self.org, self.name, self.stage_name)

    def __str__(self) -> str:
        return KEY_SEPARATOR.join((self.org, self.name, self.stage_name, self.sha))

    @classmethod
    def parse(cls, value: str) -> "DeploymentKey":
        """Parse a deployment id string.

        Raises:
            ValueError: If the string does not have exactly four parts.
        """
        parts = value.split(KEY_SEPARATOR)
        if len(parts) != 4:
            raise ValueError(f"Invalid deployment key: {value!r}")
        org, name, stage_name, sha = parts
        return cls(org=org, name=name, stage_name=stage_name, sha=sha)


class Deployment(BaseModel):
    """One attempt to move a specific commit through a specific stage.

    Records are keyed by (org#name#stage_name, sha). Re-triggers for the
    same key update the existing record; the core never deletes records.

    Attributes:
        org: Organization of the application.
        name: Application name.
        stage_name: Stage this record belongs to.
        sha: Commit identifier (range key).
        is_deploying: Mutual-exclusion flag; True while an attempt runs.
        was_success: Outcome of the last completed attempt; None while pending.
        artifact_bucket: Opaque build output bucket from the executor.
        artifact_folder: Opaque build output folder from the executor.
        trigger: The trigger that created or last re-triggered the record.
        caused_by: Deployment id of the upstream stage, None for entry stages.
        approval_status: Approval gate state.
        approved_by: Identity that made the terminal approval decision.
        decided_at: When the terminal approval decision was recorded (UTC).
        failure_cause: Classified failure reason when was_success is False.
        attempts: Number of executions started for this record.
        created_at: When the record was created (UTC).
        updated_at: When the record was last written (UTC).
    """

    org: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    stage_name: str = Field(..., min_length=1)
    sha: str = Field(..., min_length=1)
    is_deploying: bool = False
    was_success: Optional[bool] = None
    artifact_bucket: Optional[str] = None
    artifact_folder: Optional[str] = None
    trigger: Trigger
    caused_by: Optional[str] = None
    approval_status: ApprovalStatus = ApprovalStatus.UNASKED
    approved_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    failure_cause: Optional[FailureCause] = None
    attempts: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> DeploymentKey:
        return DeploymentKey(
            org=self.org, name=self.name, stage_name=self.stage_name, sha=self.sha
        )

    @property
    def hash_key(self) -> str:
        return deployment_hash_key(self.org, self.name, self.stage_name)

    @property
    def deployment_id(self) -> str:
        return str(self.key)

    def evolve(self, **changes: Any) -> "Deployment":
        """Return a copy with the given fields changed and updated_at bumped."""
        changes.setdefault("updated_at", _utcnow())
        return self.model_copy(update=changes)


class Account(BaseModel):
    """A cloud provider account registered for an application."""

    name: str = Field(..., min_length=1)
    provider: str = "aws"
    account_id: Optional[str] = None
    regions: List[str] = Field(default_factory=list)
    is_default: bool = False


class StageConfig(BaseModel):
    """A stage entry in an application's ordered stage list.

    A stage requires approval when approval_required is set or when it
    names an approval group. Allowed approvers are the explicit approvers
    plus the group's members; an empty result lets anyone decide.
    Names starting with "pr-" are reserved for pull request stages.
    """

    name: str = Field(..., min_length=1)
    approval_required: bool = False
    approvers: List[str] = Field(default_factory=list)
    approval_group: Optional[str] = None
    account: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if v.startswith(PR_STAGE_PREFIX):
            raise ValueError(f"stage names starting with {PR_STAGE_PREFIX!r} are reserved")
        return reject_key_separator(v)


class TriggerRuleKind(str, Enum):
    """Kinds of source-control activity an application reacts to."""

    MERGE = "merge"
    TAG = "tag"
    PR = "pr"


class TriggerRule(BaseModel):
    """One entry of an application's trigger configuration.

    Attributes:
        kind: merge (branch push), tag (tag push) or pr (pull request update).
        pattern: Regular expression the target branch or tag must fully
                 match. "semver" selects the semantic version pattern for
                 tags. None matches everything.
        from_branch: For merge rules, a regular expression the source branch
                     must fully match. Only merged pull requests carry a
                     source branch, so a rule with from_branch ignores plain
                     pushes.
        stage_names: Stages a matching push deploys to, run in the
                     application's stage order. Empty means every stage.
        deploy: For pr rules, whether a pull request is deployed to its own
                temporary pr-<number> stage.
    """

    kind: TriggerRuleKind
    pattern: Optional[str] = None
    from_branch: Optional[str] = None
    stage_names: List[str] = Field(default_factory=list)
    deploy: bool = True

    def matches(self, trigger: Trigger) -> bool:
        if self.kind == TriggerRuleKind.PR:
            return trigger.kind == TriggerKind.PR_UPDATE

        if trigger.kind != TriggerKind.PUSH or not trigger.ref:
            return False

        prefix = "refs/heads/" if self.kind == TriggerRuleKind.MERGE else "refs/tags/"
        if not trigger.ref.startswith(prefix):
            return False

        if self.kind == TriggerRuleKind.MERGE and self.from_branch is not None:
            if trigger.source_branch is None:
                return False
            if re.fullmatch(self.from_branch, trigger.source_branch) is None:
                return False

        if self.pattern is None:
            return True
        pattern = SEMVER_PATTERN if self.pattern == "semver" else self.pattern
        return re.fullmatch(pattern, trigger.ref[len(prefix):]) is not None


def pr_stage_name(pr_number: int) -> str:
    """Name of the temporary stage a pull request deploys to."""
    return f"{PR_STAGE_PREFIX}{pr_number}"


class Application(BaseModel):
    """A deployable unit registered with the orchestrator.

    Attributes:
        org: Organization (repository owner).
        name: Application name (repository name).
        accounts: Registered cloud accounts.
        approval_groups: Approvals policy; group name to member identities.
        triggers: Trigger configuration; empty runs every push through all
                  stages and deploys pull requests to their pr-<number> stage.
        tracked_prs: Open pull requests; each one has a pr-<number> stage
                     on the default account.
        stages: Ordered stage list; the first entry is the entry stage.
        version: Optimistic locking version for concurrent update protection.
    """

    org: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    accounts: List[Account] = Field(default_factory=list)
    approval_groups: Dict[str, List[str]] = Field(default_factory=dict)
    triggers: List[TriggerRule] = Field(default_factory=list)
    tracked_prs: List[int] = Field(default_factory=list)
    stages: List[StageConfig] = Field(default_factory=list)
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("org", "name")
    @classmethod
    def validate_key_part(cls, v: str) -> str:
        return reject_key_separator(v)

    @property
    def hash_key(self) -> str:
        return application_hash_key(self.org, self.name)

    def default_account(self) -> Optional[Account]:
        return next((a for a in self.accounts if a.is_default), None)
