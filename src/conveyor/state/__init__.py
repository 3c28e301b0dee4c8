"""Deployment pipeline state and persistence.

Each (application, stage, commit) moves through:
- NotStarted → (Unasked | NotNeeded) → [Pending →] (Approved | Rejected)
- → Deploying → (Succeeded | Failed)

State is persisted with conditional writes; the in-memory store serves
tests and local development, PostgreSQL serves production.
"""

from src.conveyor.state.models import (
    APPROVAL_TRANSITIONS,
    Account,
    Application,
    ApprovalStatus,
    Deployment,
    DeploymentKey,
    FailureCause,
    StageConfig,
    Trigger,
    TriggerKind,
    TriggerRule,
    TriggerRuleKind,
    application_hash_key,
    deployment_hash_key,
    is_deployable,
    is_valid_approval_transition,
)
from src.conveyor.state.store import (
    ApplicationStore,
    DeploymentStore,
    InMemoryApplicationStore,
    InMemoryDeploymentStore,
)
from src.conveyor.state.repository import PostgresStore

__all__ = [
    # Models
    "APPROVAL_TRANSITIONS",
    "Account",
    "Application",
    "ApprovalStatus",
    "Deployment",
    "DeploymentKey",
    "FailureCause",
    "StageConfig",
    "Trigger",
    "TriggerKind",
    "TriggerRule",
    "TriggerRuleKind",
    "application_hash_key",
    "deployment_hash_key",
    "is_deployable",
    "is_valid_approval_transition",
    # Stores
    "ApplicationStore",
    "DeploymentStore",
    "InMemoryApplicationStore",
    "InMemoryDeploymentStore",
    "PostgresStore",
]
