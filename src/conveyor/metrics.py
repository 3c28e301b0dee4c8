"""Prometheus metrics for deployment pipeline observability.

Metrics are exposed at the `/metrics` endpoint in Prometheus format.

Metrics Defined:
- conveyor_advances_total: Counter of advance() calls by outcome
- conveyor_deployments_total: Counter of finished executions by result
- conveyor_executor_duration_seconds: Histogram of executor call time
- conveyor_approvals_total: Counter of approval prompts and decisions
- conveyor_deployments_in_flight: Gauge of executing deployments
- conveyor_notifications_total: Counter of notifications by kind

The MetricsNotifier plugs into the notifier chain to update the
deployment, approval and in-flight metrics from notifications.
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from src.conveyor.notifier import Notification, NotificationKind, Notifier


logger = logging.getLogger(__name__)


# Executor calls range from seconds (no-op deploys) to the 30 minute timeout
DEFAULT_DURATION_BUCKETS = (
    1.0,
    5.0,
    10.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    1200.0,
    1800.0,
)


class ConveyorMetrics:
    """Container for all orchestrator Prometheus metrics.

    Supports custom registries for testing.

    Example:
        >>> metrics = ConveyorMetrics(registry=CollectorRegistry())
        >>> metrics.record_advance("succeeded")
        >>> metrics.record_executor_duration("acme/widgets", "dev", 42.0)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.advances_total = Counter(
            "conveyor_advances_total",
            "Total number of advance calls by outcome",
            labelnames=["outcome"],
            registry=self.registry,
        )

        self.deployments_total = Counter(
            "conveyor_deployments_total",
            "Total number of finished stage executions",
            labelnames=["application", "stage", "result"],
            registry=self.registry,
        )

        self.executor_duration_seconds = Histogram(
            "conveyor_executor_duration_seconds",
            "Time spent in the build/deploy executor in seconds",
            labelnames=["application", "stage"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.approvals_total = Counter(
            "conveyor_approvals_total",
            "Approval prompts issued and decisions recorded",
            labelnames=["application", "stage", "decision"],
            registry=self.registry,
        )

        self.deployments_in_flight = Gauge(
            "conveyor_deployments_in_flight",
            "Stage executions currently running",
            labelnames=["application", "stage"],
            registry=self.registry,
        )

        self.notifications_total = Counter(
            "conveyor_notifications_total",
            "Notifications produced by kind",
            labelnames=["kind"],
            registry=self.registry,
        )

    def record_advance(self, outcome: str) -> None:
        self.advances_total.labels(outcome=outcome).inc()

    def record_deployment(self, application: str, stage: str, success: bool) -> None:
        result = "success" if success else "failure"
        self.deployments_total.labels(
            application=application,
            stage=stage,
            result=result,
        ).inc()

    def record_executor_duration(
        self, application: str, stage: str, duration_seconds: float
    ) -> None:
        self.executor_duration_seconds.labels(
            application=application,
            stage=stage,
        ).observe(duration_seconds)

    def record_approval(self, application: str, stage: str, decision: str) -> None:
        self.approvals_total.labels(
            application=application,
            stage=stage,
            decision=decision,
        ).inc()

    def update_in_flight(self, application: str, stage: str, delta: int) -> None:
        """Adjust the in-flight gauge, never going below zero."""
        gauge = self.deployments_in_flight.labels(application=application, stage=stage)
        current = gauge._value.get()
        gauge.set(max(0, current + delta))


# Global metrics instance for the default registry
_default_metrics: Optional[ConveyorMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> ConveyorMetrics:
    """Get or create the metrics instance.

    Args:
        registry: Optional Prometheus registry. If None, returns the
                  global metrics instance for the default registry.
    """
    global _default_metrics

    if registry is not None:
        return ConveyorMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = ConveyorMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus metrics output for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


class MetricsNotifier(Notifier):
    """Notifier that updates Prometheus metrics.

    - DEPLOY_STARTED: increments the in-flight gauge
    - DEPLOY_SUCCEEDED / DEPLOY_FAILED: records the result and decrements
      the in-flight gauge
    - APPROVAL_REQUESTED: records a "requested" approval
    - OPERATOR_ALERT after an execution ended: decrements the in-flight
      gauge, since no result notification follows

    Every notification also increments conveyor_notifications_total.
    Approval decisions are recorded by the approval gate.
    """

    def __init__(
        self,
        metrics: Optional[ConveyorMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> ConveyorMetrics:
        return self._metrics

    async def notify(self, notification: Notification) -> None:
        context = notification.context
        application = f"{context.org}/{context.name}"
        stage = context.stage_name

        try:
            self._metrics.notifications_total.labels(kind=notification.kind.value).inc()

            if notification.kind == NotificationKind.DEPLOY_STARTED:
                self._metrics.update_in_flight(application, stage, 1)
            elif notification.kind == NotificationKind.DEPLOY_SUCCEEDED:
                self._metrics.record_deployment(application, stage, success=True)
                self._metrics.update_in_flight(application, stage, -1)
            elif notification.kind == NotificationKind.DEPLOY_FAILED:
                self._metrics.record_deployment(application, stage, success=False)
                self._metrics.update_in_flight(application, stage, -1)
            elif notification.kind == NotificationKind.OPERATOR_ALERT:
                if notification.payload.get("execution_ended"):
                    self._metrics.update_in_flight(application, stage, -1)
            elif notification.kind == NotificationKind.APPROVAL_REQUESTED:
                self._metrics.record_approval(application, stage, "requested")
        except Exception as e:
            logger.error(
                "Failed to update metrics for notification %s: %s",
                notification.kind.value,
                str(e),
                extra={
                    "notification_kind": notification.kind.value,
                    "deployment_id": notification.deployment_id,
                    "error": str(e),
                },
            )
