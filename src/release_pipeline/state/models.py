"""Pipeline run state models.

This module defines the data models for the release pipeline state, including:
- RunStatus / StageStatus: Lifecycle of a run and of each stage
- StageTransition: Audit record of a stage status change
- StageExecution: One stage of one run
- PipelineRun: A run promoting one artifact through the pipeline
- LastKnownGood / EnvironmentStatus / EnvironmentLease: Per-environment state
- VALID_TRANSITIONS: Map defining allowed stage status transitions

Stage Flow:
    pending → awaiting_gate → [awaiting_approval] → deploying
    → [canarying] → succeeded

Any non-terminal status can move to failed. failed moves to rolled_back
once the rollback path has run.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, Field

from release_pipeline.approval.models import ApprovalRecord
from release_pipeline.clock import utcnow
from release_pipeline.definition import StageConfig
from release_pipeline.gates.models import GateVerdict
from release_pipeline.rollout.models import RolloutState


class RunStatus(str, Enum):
    """Overall status of a pipeline run.

    Attributes:
        PENDING: Submitted, not advanced yet.
        RUNNING: A stage is in flight.
        SUCCEEDED: The final stage succeeded without any rollback.
        FAILED: A stage failed and no rollback happened.
        ROLLED_BACK: A rollback happened somewhere in the run.
        QUARANTINED: Frozen after an invariant violation; needs a human.
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    QUARANTINED = "quarantined"


TERMINAL_RUN_STATUSES: FrozenSet[RunStatus] = frozenset(
    {
        RunStatus.SUCCEEDED,
        RunStatus.FAILED,
        RunStatus.ROLLED_BACK,
        RunStatus.QUARANTINED,
    }
)


class StageStatus(str, Enum):
    """Status of one stage execution."""

    PENDING = "pending"
    AWAITING_GATE = "awaiting_gate"
    AWAITING_APPROVAL = "awaiting_approval"
    DEPLOYING = "deploying"
    CANARYING = "canarying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


TERMINAL_STAGE_STATUSES: FrozenSet[StageStatus] = frozenset(
    {StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.ROLLED_BACK}
)


VALID_TRANSITIONS: Dict[StageStatus, FrozenSet[StageStatus]] = {
    StageStatus.PENDING: frozenset({StageStatus.AWAITING_GATE, StageStatus.FAILED}),
    StageStatus.AWAITING_GATE: frozenset(
        {StageStatus.AWAITING_APPROVAL, StageStatus.DEPLOYING, StageStatus.FAILED}
    ),
    StageStatus.AWAITING_APPROVAL: frozenset(
        {StageStatus.DEPLOYING, StageStatus.FAILED}
    ),
    StageStatus.DEPLOYING: frozenset(
        {StageStatus.CANARYING, StageStatus.SUCCEEDED, StageStatus.FAILED}
    ),
    StageStatus.CANARYING: frozenset({StageStatus.SUCCEEDED, StageStatus.FAILED}),
    StageStatus.SUCCEEDED: frozenset(),
    StageStatus.FAILED: frozenset({StageStatus.ROLLED_BACK}),
    StageStatus.ROLLED_BACK: frozenset(),
}


def is_valid_transition(from_status: StageStatus, to_status: StageStatus) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, frozenset())


def make_stage_id(run_id: str, stage_name: str) -> str:
    return f"{run_id}:{stage_name}"


def parse_stage_id(stage_id: str) -> Tuple[str, str]:
    """Split a stage ID into (run_id, stage_name).

    Raises:
        ValueError: If the ID is not of the form "<run_id>:<stage_name>".
    """
    run_id, sep, stage_name = stage_id.rpartition(":")
    if not sep or not run_id or not stage_name:
        raise ValueError(f"malformed stage id: {stage_id!r}")
    return run_id, stage_name


class StageTransition(BaseModel):
    """Record of a stage status transition.

    Attributes:
        from_status: Status before the transition.
        to_status: Status after the transition.
        timestamp: When the transition occurred (UTC).
        details: Optional metadata (reason, verdict, actor, ...).
    """

    from_status: StageStatus
    to_status: StageStatus
    timestamp: datetime = Field(default_factory=utcnow)
    details: Dict[str, Any] = Field(default_factory=dict)


class StageExecution(BaseModel):
    """Execution of one configured stage within a run.

    Attributes:
        stage_id: "<run_id>:<stage_name>".
        stage_name: Name of the configured stage.
        environment: Target environment.
        status: Current status.
        requires_approval: Copied from the stage configuration.
        rollback_on_failure: Copied from the stage configuration.
        gate_verdict: Set once when the gate is evaluated.
        approval: Approval record, for stages requiring approval.
        rollout: Traffic-shift progress once deploying.
        traffic_shifted: Whether any weight for the artifact was applied.
        rollback_pending: Failed with a rollback still to run.
        reason: Human-readable explanation of the current status.
        history: Ordered status transitions.
        started_at: When the stage left PENDING.
        ended_at: When the stage reached a terminal status.
    """

    stage_id: str = Field(..., min_length=1)
    stage_name: str = Field(..., min_length=1)
    environment: str = Field(..., min_length=1)
    status: StageStatus = StageStatus.PENDING
    requires_approval: bool = False
    rollback_on_failure: bool = False
    gate_verdict: Optional[GateVerdict] = None
    approval: Optional[ApprovalRecord] = None
    rollout: Optional[RolloutState] = None
    traffic_shifted: bool = False
    rollback_pending: bool = False
    reason: Optional[str] = None
    history: List[StageTransition] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STAGE_STATUSES


class PipelineRun(BaseModel):
    """A run promoting one artifact through the configured stages.

    The run is persisted as a single document and uses optimistic locking
    via the version field.

    Attributes:
        run_id: Unique run identifier.
        artifact_ref: Immutable content-addressed artifact reference.
        artifact_digest: Digest reported by the artifact builder.
        planned_stages: Stage configuration captured at submission.
        stages: Stage executions started so far, in declared order.
        status: Overall run status.
        reason: Human-readable explanation of a non-success outcome.
        abort_requested: Operator asked to abort; honored on next advance.
        created_at: When the run was submitted (UTC).
        updated_at: When the run was last written (UTC).
        version: Optimistic locking version.
    """

    run_id: str = Field(..., min_length=1, pattern=r"^[^:]+$")
    artifact_ref: str = Field(..., min_length=1)
    artifact_digest: str = Field(..., min_length=1)
    planned_stages: List[StageConfig] = Field(..., min_length=1)
    stages: List[StageExecution] = Field(default_factory=list)
    status: RunStatus = RunStatus.PENDING
    reason: Optional[str] = None
    abort_requested: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(default=1, ge=1)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    @property
    def current_stage(self) -> Optional[StageExecution]:
        """The most recently started stage, if any."""
        return self.stages[-1] if self.stages else None

    def find_stage(self, stage_id: str) -> Optional[StageExecution]:
        for stage in self.stages:
            if stage.stage_id == stage_id:
                return stage
        return None

    def stage_config(self, stage_name: str) -> StageConfig:
        for config in self.planned_stages:
            if config.name == stage_name:
                return config
        raise KeyError(stage_name)

    def next_stage_config(self) -> Optional[StageConfig]:
        """Configuration of the stage after the current one, if any."""
        index = len(self.stages)
        if index < len(self.planned_stages):
            return self.planned_stages[index]
        return None

    @property
    def had_rollback(self) -> bool:
        return any(s.status == StageStatus.ROLLED_BACK for s in self.stages)


class LastKnownGood(BaseModel):
    """Most recent artifact that completed a successful rollout in an environment."""

    environment: str = Field(..., min_length=1)
    artifact_ref: str = Field(..., min_length=1)
    artifact_digest: str = Field(..., min_length=1)
    run_id: str = Field(..., min_length=1)
    recorded_at: datetime = Field(default_factory=utcnow)


class EnvironmentStatus(BaseModel):
    """What is currently deployed in an environment.

    ``undeployed`` is set when a rollback found no last-known-good artifact.
    """

    environment: str = Field(..., min_length=1)
    artifact_ref: Optional[str] = None
    undeployed: bool = False
    updated_at: datetime = Field(default_factory=utcnow)


class EnvironmentLease(BaseModel):
    """Per-environment deploy mutex held by one run until it expires."""

    environment: str = Field(..., min_length=1)
    holder: str = Field(..., min_length=1)
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def renewed(self, now: datetime, ttl_seconds: float) -> "EnvironmentLease":
        return self.model_copy(
            update={"expires_at": now + timedelta(seconds=ttl_seconds)}
        )
