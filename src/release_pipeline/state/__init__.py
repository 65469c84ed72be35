"""Pipeline run state: models, state machine and persistence."""

from release_pipeline.state.machine import (
    InvalidTransitionError,
    InvariantViolationError,
    PipelineStateMachine,
    RunNotFoundError,
    StageNotFoundError,
    StateRepository,
    VersionConflictError,
    check_invariants,
)
from release_pipeline.state.memory import InMemoryStateRepository
from release_pipeline.state.models import (
    VALID_TRANSITIONS,
    EnvironmentLease,
    EnvironmentStatus,
    LastKnownGood,
    PipelineRun,
    RunStatus,
    StageExecution,
    StageStatus,
    StageTransition,
    is_valid_transition,
    make_stage_id,
    parse_stage_id,
)
from release_pipeline.state.repository import DatabaseError, PostgresStateRepository

__all__ = [
    "DatabaseError",
    "EnvironmentLease",
    "EnvironmentStatus",
    "InMemoryStateRepository",
    "InvalidTransitionError",
    "InvariantViolationError",
    "LastKnownGood",
    "PipelineRun",
    "PipelineStateMachine",
    "PostgresStateRepository",
    "RunNotFoundError",
    "RunStatus",
    "StageExecution",
    "StageNotFoundError",
    "StageStatus",
    "StageTransition",
    "StateRepository",
    "VALID_TRANSITIONS",
    "VersionConflictError",
    "check_invariants",
    "is_valid_transition",
    "make_stage_id",
    "parse_stage_id",
]
