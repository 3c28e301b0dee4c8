"""Trigger normalization for inbound events.

Converts GitHub push and pull request webhooks, manual re-run requests and
chat approval commands into canonical Triggers.
"""

from .models import (
    ApprovalCommand,
    ApprovalDecision,
    ChatCommandRequest,
    GitHubEventType,
    ManualRerunRequest,
    PullRequestAction,
    PullRequestClosed,
)
from .normalizer import TriggerNormalizer, dedupe_triggers, verify_signature

__all__ = [
    "ApprovalCommand",
    "ApprovalDecision",
    "ChatCommandRequest",
    "GitHubEventType",
    "ManualRerunRequest",
    "PullRequestAction",
    "PullRequestClosed",
    "TriggerNormalizer",
    "dedupe_triggers",
    "verify_signature",
]
