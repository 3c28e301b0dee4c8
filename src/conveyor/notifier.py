"""Notifier port for outbound chat notifications and approval prompts.

This module defines the Notification model, the abstract Notifier interface
and concrete implementations for different sinks:

- LoggingNotifier: Writes notifications as structured log entries
- WebhookNotifier: POSTs notifications to the chat integration over HTTP
- CompositeNotifier: Delivers to multiple sinks simultaneously
- NullNotifier: Discards notifications

MetricsNotifier lives in metrics.py.

Notification delivery is best effort: the orchestrator and the approval
gate log notifier failures and never let them disrupt the pipeline.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from src.conveyor.state.models import Deployment, DeploymentKey


logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    """Kinds of outbound messages.

    Attributes:
        APPROVAL_REQUESTED: Prompt approvers to approve or reject a stage.
        DEPLOY_STARTED: A stage began executing for a commit.
        DEPLOY_SUCCEEDED: A stage finished successfully.
        DEPLOY_FAILED: A stage failed; the chain halts for this commit.
        DEPLOY_REJECTED: An approver rejected the stage; the chain halts.
        OPERATOR_ALERT: The store could not confirm a write and a human
                        should inspect the deployment record.
    """

    APPROVAL_REQUESTED = "approval_requested"
    DEPLOY_STARTED = "deploy_started"
    DEPLOY_SUCCEEDED = "deploy_succeeded"
    DEPLOY_FAILED = "deploy_failed"
    DEPLOY_REJECTED = "deploy_rejected"
    OPERATOR_ALERT = "operator_alert"


class Notification(BaseModel):
    """One outbound message about a deployment.

    Attributes:
        kind: The message kind.
        context: The deployment the message is about.
        payload: Kind-specific details (approvers, failure cause, ...).
        timestamp: When the notification was produced (UTC).
    """

    kind: NotificationKind = Field(
        ...,
        description="The kind of message being sent",
    )

    context: DeploymentKey = Field(
        ...,
        description="The deployment the message is about",
    )

    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Kind-specific details",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the notification was produced (UTC timezone)",
    )

    @classmethod
    def for_deployment(
        cls,
        kind: NotificationKind,
        deployment: Deployment,
        **payload: Any,
    ) -> "Notification":
        return cls(kind=kind, context=deployment.key, payload=payload)

    @property
    def deployment_id(self) -> str:
        return str(self.context)

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the notification for structured logging."""
        return {
            "notification_kind": self.kind.value,
            "deployment_id": self.deployment_id,
            "application": f"{self.context.org}/{self.context.name}",
            "stage": self.context.stage_name,
            "sha": self.context.sha,
            "timestamp": self.timestamp.isoformat(),
            **{f"payload_{k}": v for k, v in self.payload.items()},
        }


class Notifier(ABC):
    """Abstract base class for notifier sinks.

    notify() is called from async contexts. Implementations may raise;
    callers treat any exception as a failed delivery and carry on.
    """

    @abstractmethod
    async def notify(self, notification: Notification) -> None:
        """Deliver one notification."""

    async def close(self) -> None:
        """Release resources held by the sink."""


class LoggingNotifier(Notifier):
    """Writes notifications as structured log entries.

    Failures and operator alerts log at ERROR, rejections at WARNING and
    everything else at INFO.
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger
        self._log_level_map = {
            NotificationKind.DEPLOY_FAILED: logging.ERROR,
            NotificationKind.OPERATOR_ALERT: logging.ERROR,
            NotificationKind.DEPLOY_REJECTED: logging.WARNING,
        }

    async def notify(self, notification: Notification) -> None:
        self._logger.log(
            self._log_level_map.get(notification.kind, logging.INFO),
            "Notification: %s for %s",
            notification.kind.value,
            notification.deployment_id,
            extra=notification.to_log_dict(),
        )


class WebhookNotifier(Notifier):
    """Delivers notifications to the chat integration over HTTP.

    Each notification is POSTed as JSON to the configured URL. The chat
    integration renders approval prompts and relays decisions back to
    POST /chat/commands.

    Attributes:
        url: Endpoint of the chat integration.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def notify(self, notification: Notification) -> None:
        """POST the notification.

        Raises:
            httpx.HTTPError: If the request fails or returns an error status.
        """
        response = await self.client.post(
            self.url,
            content=notification.model_dump_json(),
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()
        logger.debug(
            "Delivered notification",
            extra={
                "notification_kind": notification.kind.value,
                "deployment_id": notification.deployment_id,
                "status_code": response.status_code,
            },
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class CompositeNotifier(Notifier):
    """Delivers each notification to every child notifier.

    Failures in one child do not affect the others; they are logged and
    not propagated.
    """

    def __init__(self, notifiers: Optional[List[Notifier]] = None):
        self._notifiers: List[Notifier] = notifiers or []

    def add_notifier(self, notifier: Notifier) -> None:
        self._notifiers.append(notifier)

    @property
    def notifiers(self) -> List[Notifier]:
        return list(self._notifiers)

    async def notify(self, notification: Notification) -> None:
        for notifier in self._notifiers:
            try:
                await notifier.notify(notification)
            except Exception as e:
                logger.error(
                    "Failed to deliver notification via %s: %s",
                    type(notifier).__name__,
                    str(e),
                    extra={
                        "notifier_type": type(notifier).__name__,
                        "notification_kind": notification.kind.value,
                        "deployment_id": notification.deployment_id,
                        "error": str(e),
                    },
                )

    async def close(self) -> None:
        for notifier in self._notifiers:
            try:
                await notifier.close()
            except Exception as e:
                logger.error(
                    "Failed to close notifier %s: %s",
                    type(notifier).__name__,
                    str(e),
                )


class NullNotifier(Notifier):
    """Discards all notifications."""

    async def notify(self, notification: Notification) -> None:
        pass


async def safe_notify(notifier: Notifier, notification: Notification) -> None:
    """Deliver a notification, logging instead of raising on failure."""
    try:
        await notifier.notify(notification)
    except Exception as e:
        logger.error(
            "Failed to send notification: %s",
            str(e),
            extra={
                "notification_kind": notification.kind.value,
                "deployment_id": notification.deployment_id,
                "error": str(e),
            },
        )


def create_notifier(
    webhook_url: Optional[str] = None,
    enable_metrics: bool = True,
    webhook_timeout: float = 10.0,
) -> Notifier:
    """Build the notifier chain from configuration.

    Logging is always enabled. Metrics and the chat webhook are added when
    requested, and multiple sinks are wrapped in a CompositeNotifier.

    Example:
        >>> notifier = create_notifier(enable_metrics=False)
        >>> isinstance(notifier, LoggingNotifier)
        True
    """
    notifiers: List[Notifier] = [LoggingNotifier()]

    if enable_metrics:
        from src.conveyor.metrics import MetricsNotifier

        notifiers.append(MetricsNotifier())

    if webhook_url:
        notifiers.append(WebhookNotifier(webhook_url, timeout=webhook_timeout))

    if len(notifiers) == 1:
        return notifiers[0]
    return CompositeNotifier(notifiers)
