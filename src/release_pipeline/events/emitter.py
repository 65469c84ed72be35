"""Event emitter implementations for pipeline observability.

This module defines an abstract EventEmitter interface and concrete
implementations for different event sinks:

- LoggingEventEmitter: Emits events as structured log entries
- WebhookEventEmitter: Posts events to the external notification sink
- CompositeEventEmitter: Emits to multiple sinks simultaneously
- NullEventEmitter: Discards events (for testing)

Notification delivery is best effort: a sink failure is logged and never
propagated into the pipeline.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

import httpx
import structlog

from release_pipeline.events.models import EventType, PipelineEvent

logger = structlog.get_logger(__name__)


class EventSinkType(str, Enum):
    """Types of event sinks supported by the pipeline.

    Attributes:
        LOGGING: Emit events as structured log entries.
        METRICS: Emit events as Prometheus metrics.
        WEBHOOK: POST events as JSON to the notification sink.
    """

    LOGGING = "logging"
    METRICS = "metrics"
    WEBHOOK = "webhook"


class EventEmitter(ABC):
    """Abstract base class for pipeline event emitters.

    Implementations should be async-safe and fault-tolerant: emit()
    failures should be logged, not raised into the orchestrator.
    """

    @abstractmethod
    async def emit(self, event: PipelineEvent) -> None:
        """Emit a pipeline event."""

    async def close(self) -> None:
        """Release resources. The default implementation does nothing."""


class LoggingEventEmitter(EventEmitter):
    """Event emitter that writes events as structured log entries.

    Log levels per event type:
    - STATE_TRANSITION, COMPLETION, APPROVAL_REQUESTED: info
    - TIMEOUT, ROLLBACK: warning
    - ERROR, ALERT: error
    """

    _LEVELS = {
        EventType.STATE_TRANSITION: "info",
        EventType.COMPLETION: "info",
        EventType.APPROVAL_REQUESTED: "info",
        EventType.TIMEOUT: "warning",
        EventType.ROLLBACK: "warning",
        EventType.ERROR: "error",
        EventType.ALERT: "error",
    }

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = (
            structlog.get_logger(logger_name) if logger_name else logger
        )

    async def emit(self, event: PipelineEvent) -> None:
        level = self._LEVELS.get(event.event_type, "info")
        getattr(self._logger, level)("Pipeline event", **event.to_log_dict())


class WebhookEventEmitter(EventEmitter):
    """Event emitter that POSTs events to an HTTP notification sink.

    Only the event types a human should see are delivered by default
    (approval requests, rollbacks, alerts, errors and completions). Delivery
    is a single attempt with a short timeout; failures are logged and
    dropped so a slow or broken sink cannot stall the pipeline.

    Attributes:
        url: Notification sink endpoint.
        event_types: Event types forwarded to the sink.
    """

    DEFAULT_EVENT_TYPES = frozenset(
        {
            EventType.APPROVAL_REQUESTED,
            EventType.ROLLBACK,
            EventType.ALERT,
            EventType.ERROR,
            EventType.COMPLETION,
        }
    )

    def __init__(
        self,
        url: str,
        event_types: Optional[frozenset] = None,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.event_types = event_types or self.DEFAULT_EVENT_TYPES
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def emit(self, event: PipelineEvent) -> None:
        if event.event_type not in self.event_types:
            return
        try:
            response = await self.client.post(self.url, json=event.to_log_dict())
            if response.status_code >= 400:
                logger.warning(
                    "Notification sink rejected event",
                    status_code=response.status_code,
                    event_type=event.event_type.value,
                    run_id=event.run_id,
                )
        except httpx.HTTPError as e:
            logger.warning(
                "Notification delivery failed",
                error=str(e),
                event_type=event.event_type.value,
                run_id=event.run_id,
            )

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class CompositeEventEmitter(EventEmitter):
    """Event emitter that delegates to multiple child emitters.

    Failures in one emitter do not affect the others.
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._emitters: List[EventEmitter] = emitters or []

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._emitters.append(emitter)

    @property
    def emitters(self) -> List[EventEmitter]:
        """Read-only copy of the child emitters."""
        return list(self._emitters)

    async def emit(self, event: PipelineEvent) -> None:
        for emitter in self._emitters:
            try:
                await emitter.emit(event)
            except Exception as e:
                logger.error(
                    "Failed to emit event",
                    emitter_type=type(emitter).__name__,
                    event_type=event.event_type.value,
                    run_id=event.run_id,
                    error=str(e),
                )

    async def close(self) -> None:
        for emitter in self._emitters:
            try:
                await emitter.close()
            except Exception as e:
                logger.error(
                    "Failed to close emitter",
                    emitter_type=type(emitter).__name__,
                    error=str(e),
                )


class NullEventEmitter(EventEmitter):
    """Event emitter that discards all events."""

    async def emit(self, event: PipelineEvent) -> None:
        pass


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    webhook_url: Optional[str] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Create an event emitter for the requested sinks.

    Args:
        sink_types: Sinks to enable. Defaults to logging only.
        webhook_url: Notification sink URL, required for WEBHOOK.
        logger_name: Optional logger name for the logging sink.

    Returns:
        A single emitter, or a CompositeEventEmitter for several sinks.

    Example:
        >>> emitter = create_event_emitter([EventSinkType.LOGGING])
        >>> isinstance(emitter, LoggingEventEmitter)
        True
    """
    if not sink_types:
        return LoggingEventEmitter(logger_name=logger_name)

    emitters: List[EventEmitter] = []

    for sink_type in sink_types:
        if sink_type == EventSinkType.LOGGING:
            emitters.append(LoggingEventEmitter(logger_name=logger_name))
        elif sink_type == EventSinkType.METRICS:
            # Imported lazily; metrics.py imports this module
            from release_pipeline.events.metrics import MetricsEventEmitter

            emitters.append(MetricsEventEmitter())
        elif sink_type == EventSinkType.WEBHOOK:
            if not webhook_url:
                logger.warning("Webhook sink requested without a URL, skipping")
                continue
            emitters.append(WebhookEventEmitter(url=webhook_url))
        else:
            logger.warning("Unknown event sink type, skipping", sink_type=sink_type)

    if not emitters:
        return LoggingEventEmitter(logger_name=logger_name)

    if len(emitters) == 1:
        return emitters[0]

    return CompositeEventEmitter(emitters)
