"""Trigger normalizer for the deployment pipeline.

This module converts raw inbound events into canonical Trigger records.
Normalization is pure: it reads nothing and writes nothing, and the same
event always normalizes to an equivalent Trigger (equal in every field but
timestamp).

Invalid or unsupported payloads return None and are logged rather than
raising, so the webhook endpoint can acknowledge GitHub quickly.

GitHub Webhook Payload Structure (push event):
{
  "ref": "refs/heads/main",
  "after": "abc123...",
  "deleted": false,
  "repository": {
    "name": "widgets",
    "owner": {"login": "acme"}
  },
  "pusher": {"name": "alice"}
}

GitHub Webhook Payload Structure (pull_request event):
{
  "action": "synchronize",
  "number": 42,
  "pull_request": {
    "head": {"sha": "abc123...", "ref": "feature"},
    "base": {"ref": "main"},
    "merged": false,
    "merge_commit_sha": "def456..."
  },
  "repository": {...},
  "sender": {"login": "alice"}
}
"""

import hashlib
import hmac
import logging
from typing import Any, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError

from src.conveyor.state.models import DeploymentKey, Trigger, TriggerKind
from src.conveyor.triggers.models import (
    ApprovalCommand,
    ApprovalDecision,
    ChatCommandRequest,
    GitHubEventType,
    ManualRerunRequest,
    PullRequestAction,
    PullRequestClosed,
)

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="

# GitHub reports branch and tag deletions with an all-zero "after" sha
NULL_SHA = "0" * 40


def verify_signature(body: bytes, signature_header: Optional[str], secret: str) -> bool:
    """Check GitHub's X-Hub-Signature-256 header against the raw body.

    Args:
        body: The raw request body exactly as received.
        signature_header: The header value ("sha256=<hexdigest>"), if any.
        secret: The shared webhook secret.

    Returns:
        True only if the header is present and the digest matches.
    """
    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        return False

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature_header[len(SIGNATURE_PREFIX):], expected)


def dedupe_triggers(triggers: Iterable[Trigger]) -> List[Trigger]:
    """Collapse equivalent triggers, keeping the first of each in order."""
    seen = set()
    unique = []
    for trigger in triggers:
        if trigger.dedupe_key in seen:
            continue
        seen.add(trigger.dedupe_key)
        unique.append(trigger)
    return unique


class TriggerNormalizer:
    """Parses raw inbound events into Triggers and approval commands."""

    def parse_github_event(
        self, event_type: Optional[str], payload: Any
    ) -> Optional[Union[Trigger, PullRequestClosed]]:
        """Dispatch on the X-GitHub-Event header value.

        Returns:
            A Trigger for pushes and PR updates, PullRequestClosed for
            closed PRs, None for anything else.
        """
        if event_type == GitHubEventType.PUSH.value:
            return self.parse_push(payload)
        if event_type == GitHubEventType.PULL_REQUEST.value:
            return self.parse_pull_request(payload)

        logger.debug("Ignoring unsupported GitHub event type: %s", event_type)
        return None

    def parse_push(self, payload: Any) -> Optional[Trigger]:
        """Parse a push event into a push Trigger.

        Branch and tag deletions are ignored.
        """
        if not isinstance(payload, dict):
            logger.warning("Invalid payload: expected dict, got %s", type(payload))
            return None

        ref = payload.get("ref")
        if not isinstance(ref, str) or not ref.startswith("refs/"):
            logger.warning("Missing or invalid 'ref' in push payload: %s", ref)
            return None

        sha = payload.get("after")
        if payload.get("deleted") or sha == NULL_SHA:
            logger.debug("Ignoring deletion of %s", ref)
            return None
        if not isinstance(sha, str) or not sha.strip():
            logger.warning("Missing or invalid 'after' sha in push payload: %s", sha)
            return None

        repository = self._extract_repository(payload.get("repository"))
        if repository is None:
            return None
        org, name = repository

        pusher = payload.get("pusher")
        initiator = None
        if isinstance(pusher, dict) and isinstance(pusher.get("name"), str):
            initiator = pusher["name"]

        trigger = Trigger(
            kind=TriggerKind.PUSH,
            org=org,
            name=name,
            sha=sha.strip(),
            ref=ref,
            initiator=initiator,
        )
        logger.info(
            "Normalized push: %s %s@%s", trigger.full_name, ref, trigger.sha
        )
        return trigger

    def parse_pull_request(
        self, payload: Any
    ) -> Optional[Union[Trigger, PullRequestClosed]]:
        """Parse a pull_request event.

        opened, reopened and synchronize produce a pr_update Trigger for the
        head commit; closed produces PullRequestClosed; other actions are
        ignored. A merged pull request also yields a push trigger for its
        merge commit on the base branch, with the head branch as source.
        """
        if not isinstance(payload, dict):
            logger.warning("Invalid payload: expected dict, got %s", type(payload))
            return None

        try:
            action = PullRequestAction(payload.get("action"))
        except ValueError:
            logger.debug("Ignoring pull_request action: %s", payload.get("action"))
            return None

        number = payload.get("number")
        if not isinstance(number, int) or isinstance(number, bool) or number <= 0:
            logger.warning("Invalid pull request number: %s", number)
            return None

        repository = self._extract_repository(payload.get("repository"))
        if repository is None:
            return None
        org, name = repository

        pull_request = payload.get("pull_request")
        if not isinstance(pull_request, dict):
            logger.warning(
                "Missing or invalid 'pull_request' field in payload: %s",
                type(pull_request),
            )
            return None

        sender = payload.get("sender")
        initiator = sender.get("login") if isinstance(sender, dict) else None
        if not isinstance(initiator, str):
            initiator = None
        head = pull_request.get("head")
        head_ref = head.get("ref") if isinstance(head, dict) else None
        if not isinstance(head_ref, str) or not head_ref:
            head_ref = None

        if action == PullRequestAction.CLOSED:
            merged = bool(pull_request.get("merged"))
            return PullRequestClosed(
                org=org,
                name=name,
                pr_number=number,
                merged=merged,
                merge=self._merge_trigger(org, name, pull_request, head_ref, initiator)
                if merged
                else None,
            )

        sha = head.get("sha") if isinstance(head, dict) else None
        if not isinstance(sha, str) or not sha.strip():
            logger.warning("Missing head sha for pull request %s/%s#%s", org, name, number)
            return None

        trigger = Trigger(
            kind=TriggerKind.PR_UPDATE,
            org=org,
            name=name,
            sha=sha.strip(),
            ref=f"refs/heads/{head_ref}" if head_ref else None,
            source_branch=head_ref,
            pr_number=number,
            initiator=initiator,
        )
        logger.info(
            "Normalized pull request %s: %s#%s@%s",
            action.value,
            trigger.full_name,
            number,
            trigger.sha,
        )
        return trigger

    def _merge_trigger(
        self,
        org: str,
        name: str,
        pull_request: dict,
        head_ref: Optional[str],
        initiator: Optional[str],
    ) -> Optional[Trigger]:
        """Build the push trigger for a merged pull request's merge commit."""
        base = pull_request.get("base")
        base_ref = base.get("ref") if isinstance(base, dict) else None
        sha = pull_request.get("merge_commit_sha")
        if not isinstance(base_ref, str) or not base_ref:
            logger.warning("Missing base ref for merged pull request %s/%s", org, name)
            return None
        if not isinstance(sha, str) or not sha.strip():
            logger.warning("Missing merge commit for merged pull request %s/%s", org, name)
            return None

        return Trigger(
            kind=TriggerKind.PUSH,
            org=org,
            name=name,
            sha=sha.strip(),
            ref=f"refs/heads/{base_ref}",
            source_branch=head_ref,
            initiator=initiator,
        )

    def parse_manual_rerun(self, payload: Any) -> Optional[Trigger]:
        """Parse a manual re-run request into a manual Trigger."""
        try:
            request = ManualRerunRequest.model_validate(payload)
        except ValidationError as e:
            logger.warning("Invalid manual re-run payload: %s", e)
            return None

        return Trigger(
            kind=TriggerKind.MANUAL,
            org=request.org,
            name=request.name,
            sha=request.sha,
            stage_name=request.stage,
            initiator=request.requested_by,
        )

    def parse_chat_command(self, payload: Any) -> Optional[ApprovalCommand]:
        """Parse a chat approval command.

        The deployment key must have the form Org#Name#StageName#Sha and the
        decision must be approve or reject (case-insensitive).
        """
        try:
            request = ChatCommandRequest.model_validate(payload)
        except ValidationError as e:
            logger.warning("Invalid chat command payload: %s", e)
            return None

        try:
            decision = ApprovalDecision(request.decision.strip().lower())
        except ValueError:
            logger.warning("Unsupported approval decision: %s", request.decision)
            return None

        try:
            key = DeploymentKey.parse(request.deployment_key.strip())
        except (ValueError, ValidationError) as e:
            logger.warning("Invalid deployment key in chat command: %s", e)
            return None

        approver = request.approver.strip()
        if not approver:
            logger.warning("Empty approver in chat command")
            return None

        return ApprovalCommand(key=key, decision=decision, approver=approver)

    def _extract_repository(self, repo_data: Any) -> Optional[Tuple[str, str]]:
        """Extract (org, name) from a repository object.

        Push payloads carry owner.name while other events carry owner.login.
        """
        if not isinstance(repo_data, dict):
            logger.warning(
                "Missing or invalid 'repository' field in payload: %s",
                type(repo_data),
            )
            return None

        name = repo_data.get("name")
        if not isinstance(name, str) or not name.strip():
            logger.warning("Invalid or empty repository name: %s", name)
            return None

        owner = repo_data.get("owner")
        org = None
        if isinstance(owner, dict):
            org = owner.get("login") or owner.get("name")
        if not isinstance(org, str) or not org.strip():
            logger.warning("Invalid or empty repository owner: %s", owner)
            return None

        return org.strip(), name.strip()
