"""Pipeline event models for observability and notifications.

This module defines the data models for pipeline events, including:
- EventType: Enum of all event types emitted by the orchestrator
- AlertSeverity: Severity of operational alerts
- PipelineEvent: Structured event with all required metadata

Events feed three consumers: structured logs, Prometheus metrics, and the
external notification sink (approval requests, rollbacks, alerts).
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from release_pipeline.clock import utcnow


class EventType(str, Enum):
    """Types of events emitted by the release pipeline.

    Attributes:
        STATE_TRANSITION: A stage moved between statuses.
        ERROR: A stage failed (gate, approval, deploy, rollout).
        COMPLETION: A run finished; details carry the final status.
        TIMEOUT: A time-bounded wait expired (gate report, approval).
        APPROVAL_REQUESTED: A stage is waiting for a human decision.
        ROLLBACK: An environment was reverted (or marked undeployed).
        ALERT: An operational alert that needs a human to look at it.
    """

    STATE_TRANSITION = "state_transition"
    ERROR = "error"
    COMPLETION = "completion"
    TIMEOUT = "timeout"
    APPROVAL_REQUESTED = "approval_requested"
    ROLLBACK = "rollback"
    ALERT = "alert"


class AlertSeverity(str, Enum):
    """Severity of an ALERT event."""

    WARNING = "warning"
    FATAL = "fatal"


class PipelineEvent(BaseModel):
    """Structured event emitted by the release pipeline.

    Attributes:
        event_type: The category of event.
        run_id: Pipeline run the event belongs to.
        artifact_ref: Artifact reference of that run.
        stage_name: Stage involved, if any.
        environment: Target environment involved, if any.
        timestamp: When the event occurred (UTC).
        details: Additional context specific to the event type.

    Details Field Conventions:
        STATE_TRANSITION: from_status, to_status
        ERROR: stage, reason
        COMPLETION: status, duration_seconds
        TIMEOUT: operation, stage
        APPROVAL_REQUESTED: stage_id, deadline
        ROLLBACK: outcome, restored_artifact_ref, attempts
        ALERT: alert, severity, message
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    run_id: str = Field(
        ...,
        min_length=1,
        description="Pipeline run identifier",
    )

    artifact_ref: str = Field(
        ...,
        min_length=1,
        description="Artifact reference of the run",
    )

    stage_name: Optional[str] = Field(
        default=None,
        description="Stage the event refers to, if any",
    )

    environment: Optional[str] = Field(
        default=None,
        description="Target environment the event refers to, if any",
    )

    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event into a dictionary for logging or JSON delivery.

        Example:
            >>> event = PipelineEvent(
            ...     event_type=EventType.ALERT,
            ...     run_id="r1",
            ...     artifact_ref="registry/app@sha256:abc",
            ...     details={"alert": "rollback_failed"},
            ... )
            >>> event.to_log_dict()["event_type"]
            'alert'
        """
        return {
            "event_type": self.event_type.value,
            "run_id": self.run_id,
            "artifact_ref": self.artifact_ref,
            "stage_name": self.stage_name,
            "environment": self.environment,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
