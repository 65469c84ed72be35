"""Prometheus metrics for pipeline observability.

Metrics are exposed at the ``/metrics`` endpoint in Prometheus format.

Metrics Defined:
- release_pipeline_runs_completed_total: Runs that reached a final status
- release_pipeline_stage_failures_total: Stage failures by stage/environment
- release_pipeline_rollbacks_total: Rollbacks by environment and outcome
- release_pipeline_alerts_total: Operational alerts by alert name
- release_pipeline_run_duration_seconds: Submit-to-final-status duration
- release_pipeline_stages_by_status: Stages currently in each status

The MetricsEventEmitter updates these from pipeline events, so the
orchestrator never touches Prometheus directly.
"""

from typing import Optional

import structlog
from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from release_pipeline.events.emitter import EventEmitter
from release_pipeline.events.models import EventType, PipelineEvent

logger = structlog.get_logger(__name__)


# One minute to one day; promotions wait on humans
DEFAULT_DURATION_BUCKETS = (
    60.0,
    300.0,
    900.0,
    1800.0,
    3600.0,
    7200.0,
    14400.0,
    43200.0,
    86400.0,
)

# Matches StageStatus values in state/models.py
STAGE_STATUSES = (
    "pending",
    "awaiting_gate",
    "awaiting_approval",
    "deploying",
    "canarying",
    "succeeded",
    "failed",
    "rolled_back",
)


class PipelineMetrics:
    """Container for all pipeline Prometheus metrics.

    Supports custom registries so tests don't collide with the default one.

    Example:
        >>> metrics = PipelineMetrics(registry=CollectorRegistry())
        >>> metrics.record_run_completed("succeeded")
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.runs_completed_total = Counter(
            "release_pipeline_runs_completed_total",
            "Pipeline runs that reached a final status",
            labelnames=["status"],
            registry=self.registry,
        )

        self.stage_failures_total = Counter(
            "release_pipeline_stage_failures_total",
            "Stage executions that failed",
            labelnames=["stage", "environment"],
            registry=self.registry,
        )

        self.rollbacks_total = Counter(
            "release_pipeline_rollbacks_total",
            "Rollbacks performed, by outcome",
            labelnames=["environment", "outcome"],
            registry=self.registry,
        )

        self.alerts_total = Counter(
            "release_pipeline_alerts_total",
            "Operational alerts raised",
            labelnames=["alert", "severity"],
            registry=self.registry,
        )

        self.run_duration_seconds = Histogram(
            "release_pipeline_run_duration_seconds",
            "Time from submission to final status in seconds",
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.stages_by_status = Gauge(
            "release_pipeline_stages_by_status",
            "Current number of stage executions in each status",
            labelnames=["status"],
            registry=self.registry,
        )

        for status in STAGE_STATUSES:
            self.stages_by_status.labels(status=status).set(0)

    def record_run_completed(
        self, status: str, duration_seconds: Optional[float] = None
    ) -> None:
        self.runs_completed_total.labels(status=status).inc()
        if duration_seconds is not None:
            self.run_duration_seconds.observe(duration_seconds)

    def record_stage_failed(self, stage: str, environment: str) -> None:
        self.stage_failures_total.labels(stage=stage, environment=environment).inc()

    def record_rollback(self, environment: str, outcome: str) -> None:
        self.rollbacks_total.labels(environment=environment, outcome=outcome).inc()

    def record_alert(self, alert: str, severity: str) -> None:
        self.alerts_total.labels(alert=alert, severity=severity).inc()

    def move_stage(self, from_status: Optional[str], to_status: Optional[str]) -> None:
        """Shift one stage between status buckets of the gauge."""
        if from_status in STAGE_STATUSES:
            gauge = self.stages_by_status.labels(status=from_status)
            # Counts restart at zero with the process
            gauge.set(max(0, gauge._value.get() - 1))
        if to_status in STAGE_STATUSES:
            self.stages_by_status.labels(status=to_status).inc()


_default_metrics: Optional[PipelineMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> PipelineMetrics:
    """Get the process-wide metrics, or a fresh set for a custom registry."""
    global _default_metrics

    if registry is not None:
        return PipelineMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = PipelineMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Render metrics in Prometheus text format for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    - STATE_TRANSITION: moves the stage between status buckets
    - ERROR: counts a stage failure
    - COMPLETION: counts the run by final status, observes duration
    - ROLLBACK: counts the rollback by outcome
    - ALERT: counts the alert
    """

    def __init__(
        self,
        metrics: Optional[PipelineMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self._metrics = metrics if metrics is not None else get_metrics(registry)

    @property
    def metrics(self) -> PipelineMetrics:
        return self._metrics

    async def emit(self, event: PipelineEvent) -> None:
        try:
            details = event.details
            if event.event_type == EventType.STATE_TRANSITION:
                self._metrics.move_stage(
                    details.get("from_status"), details.get("to_status")
                )
            elif event.event_type == EventType.ERROR:
                self._metrics.record_stage_failed(
                    event.stage_name or "unknown",
                    event.environment or "unknown",
                )
            elif event.event_type == EventType.COMPLETION:
                duration = details.get("duration_seconds")
                self._metrics.record_run_completed(
                    details.get("status", "unknown"),
                    float(duration) if duration is not None else None,
                )
            elif event.event_type == EventType.ROLLBACK:
                self._metrics.record_rollback(
                    event.environment or "unknown",
                    details.get("outcome", "unknown"),
                )
            elif event.event_type == EventType.ALERT:
                self._metrics.record_alert(
                    details.get("alert", "unknown"),
                    details.get("severity", "unknown"),
                )
        except Exception as e:
            logger.error(
                "Failed to update metrics for event",
                event_type=event.event_type.value,
                run_id=event.run_id,
                error=str(e),
            )
