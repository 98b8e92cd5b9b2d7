"""Prometheus metrics for pipeline observability.

Metrics Defined:
- infragate_runs_completed_total: Runs reaching a terminal status
- infragate_stage_results_total: Finalized stage attempts by status
- infragate_stage_failures_total: Failed stage attempts by error kind
- infragate_run_duration_seconds: Time from trigger to terminal status
- infragate_runs_by_status: Runs currently in each non-terminal status
- infragate_approval_decisions_total: Approval outcomes

The MetricsEventEmitter updates these from the engine's event stream.
They are exposed in Prometheus format at the `/metrics` endpoint.
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

from infragate.events.emitter import EventEmitter
from infragate.events.models import EventType, PipelineEvent
from infragate.state.models import RunStatus, is_terminal_status


logger = logging.getLogger(__name__)


# Covers range from 10 seconds to 4 hours; approval waits dominate the tail
DEFAULT_DURATION_BUCKETS = (
    10.0,
    30.0,
    60.0,
    300.0,
    600.0,
    1800.0,
    3600.0,
    7200.0,
    14400.0,
)

ACTIVE_STATUSES = tuple(
    status.value for status in RunStatus if not is_terminal_status(status)
)


class PipelineMetrics:
    """Container for all pipeline Prometheus metrics.

    Supports custom registries for testing.

    Example:
        >>> metrics = PipelineMetrics(CollectorRegistry())
        >>> metrics.record_run_completed("prod/network", "succeeded")
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.runs_completed_total = Counter(
            "infragate_runs_completed_total",
            "Total number of runs that reached a terminal status",
            labelnames=["target_state_id", "status"],
            registry=self.registry,
        )

        self.stage_results_total = Counter(
            "infragate_stage_results_total",
            "Total number of finalized stage attempts",
            labelnames=["stage", "status"],
            registry=self.registry,
        )

        self.stage_failures_total = Counter(
            "infragate_stage_failures_total",
            "Total number of failed stage attempts",
            labelnames=["stage", "error_kind"],
            registry=self.registry,
        )

        self.run_duration_seconds = Histogram(
            "infragate_run_duration_seconds",
            "Time from trigger to terminal status in seconds",
            labelnames=["target_state_id"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.runs_by_status = Gauge(
            "infragate_runs_by_status",
            "Current number of runs in each non-terminal status",
            labelnames=["status"],
            registry=self.registry,
        )

        self.approval_decisions_total = Counter(
            "infragate_approval_decisions_total",
            "Total number of approval outcomes",
            labelnames=["action"],
            registry=self.registry,
        )

        for status in ACTIVE_STATUSES:
            self.runs_by_status.labels(status=status).set(0)

    def record_run_completed(self, target_state_id: str, status: str) -> None:
        self.runs_completed_total.labels(
            target_state_id=target_state_id,
            status=status,
        ).inc()

    def record_stage_result(self, stage: str, status: str) -> None:
        self.stage_results_total.labels(stage=stage, status=status).inc()

    def record_stage_failure(self, stage: str, error_kind: str) -> None:
        self.stage_failures_total.labels(
            stage=stage,
            error_kind=error_kind,
        ).inc()

    def record_run_duration(
        self,
        target_state_id: str,
        duration_seconds: float,
    ) -> None:
        self.run_duration_seconds.labels(
            target_state_id=target_state_id,
        ).observe(duration_seconds)

    def update_status_count(self, status: str, delta: int) -> None:
        """Update the count of runs in a status.

        Args:
            status: Run status value; terminal statuses are ignored.
            delta: +1 for entering, -1 for leaving.
        """
        if status in ACTIVE_STATUSES:
            gauge = self.runs_by_status.labels(status=status)
            gauge.set(max(0, gauge._value.get() + delta))

    def record_approval(self, action: str) -> None:
        self.approval_decisions_total.labels(action=action).inc()


# Global metrics instance for the default registry
_default_metrics: Optional[PipelineMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> PipelineMetrics:
    """Get the global metrics instance, or a new one for a custom registry."""
    global _default_metrics

    if registry is not None:
        return PipelineMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = PipelineMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus text format output for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    Handles:
    - STAGE_TRANSITION: Moves the run between runs_by_status buckets
    - STAGE_RESULT: Counts finalized attempts
    - ERROR, TIMEOUT: Counts stage failures by error kind
    - COMPLETION: Counts terminal runs and records run duration
    - APPROVAL: Counts approval outcomes

    Attributes:
        metrics: The PipelineMetrics instance to update.
    """

    def __init__(
        self,
        metrics: Optional[PipelineMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        if metrics is not None:
            self._metrics = metrics
        else:
            self._metrics = get_metrics(registry)

    @property
    def metrics(self) -> PipelineMetrics:
        return self._metrics

    async def emit(self, event: PipelineEvent) -> None:
        try:
            if event.event_type == EventType.STAGE_TRANSITION:
                self._handle_transition(event)
            elif event.event_type == EventType.STAGE_RESULT:
                self._metrics.record_stage_result(
                    event.stage or "unknown",
                    event.status or "unknown",
                )
            elif event.event_type in (EventType.ERROR, EventType.TIMEOUT):
                self._metrics.record_stage_failure(
                    event.stage or "unknown",
                    event.details.get("error_kind", "unknown"),
                )
            elif event.event_type == EventType.COMPLETION:
                self._handle_completion(event)
            elif event.event_type == EventType.APPROVAL:
                self._metrics.record_approval(
                    event.details.get("action", "unknown")
                )
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "run_id": event.run_id,
                },
            )

    def _handle_transition(self, event: PipelineEvent) -> None:
        from_status = event.details.get("from_status")
        to_status = event.details.get("to_status")
        if from_status:
            self._metrics.update_status_count(from_status, -1)
        if to_status:
            self._metrics.update_status_count(to_status, +1)

    def _handle_completion(self, event: PipelineEvent) -> None:
        self._metrics.record_run_completed(
            event.target_state_id,
            event.status or "unknown",
        )
        duration = event.details.get("duration_seconds")
        if duration is not None:
            self._metrics.record_run_duration(
                event.target_state_id,
                float(duration),
            )
