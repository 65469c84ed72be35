"""Pipeline event emission, notifications and metrics.

Event Emitters:
- EventEmitter: Abstract base class for event emission
- LoggingEventEmitter: Structured log entries
- WebhookEventEmitter: External notification sink (best effort)
- MetricsEventEmitter: Prometheus metrics
- CompositeEventEmitter / NullEventEmitter
"""

from release_pipeline.events.emitter import (
    CompositeEventEmitter,
    EventEmitter,
    EventSinkType,
    LoggingEventEmitter,
    NullEventEmitter,
    WebhookEventEmitter,
    create_event_emitter,
)
from release_pipeline.events.metrics import (
    MetricsEventEmitter,
    PipelineMetrics,
    generate_metrics_output,
    get_metrics,
)
from release_pipeline.events.models import AlertSeverity, EventType, PipelineEvent

__all__ = [
    "AlertSeverity",
    "EventType",
    "PipelineEvent",
    "EventEmitter",
    "LoggingEventEmitter",
    "WebhookEventEmitter",
    "CompositeEventEmitter",
    "MetricsEventEmitter",
    "NullEventEmitter",
    "PipelineMetrics",
    "get_metrics",
    "generate_metrics_output",
    "EventSinkType",
    "create_event_emitter",
]
