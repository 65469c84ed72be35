"""Canary rollout models.

A RolloutState is owned by the StageExecution it belongs to and is
persisted with the run, so the controller itself holds no state between
polls.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class RolloutDecision(str, Enum):
    """Per-tick decision of the rollout controller."""

    ADVANCE = "advance"
    HOLD = "hold"
    ABORT = "abort"


class HealthSample(BaseModel):
    """One health observation taken during a step.

    Attributes:
        step_index: Step the sample was taken at.
        error_rate: Failed / total requests in the sample window.
        latency_ms: Latency reported for the window.
        sample_count: Requests observed in the window.
        qualifying: Whether the sample met the minimum sample size.
        sampled_at: When the sample was taken.
    """

    step_index: int = Field(..., ge=0)
    error_rate: float = Field(..., ge=0.0, le=1.0)
    latency_ms: float = Field(default=0.0, ge=0.0)
    sample_count: int = Field(..., ge=0)
    qualifying: bool
    sampled_at: datetime


class StepDecision(BaseModel):
    """Entry in the rollout decision log."""

    step_index: int = Field(..., ge=0)
    weight: int
    decision: RolloutDecision
    reason: str
    decided_at: datetime


def validate_steps(steps: List[int]) -> List[int]:
    """Check that weights are strictly increasing within 1..100 and end at 100."""
    if not steps:
        raise ValueError("canary steps cannot be empty")
    previous = 0
    for weight in steps:
        if not 0 < weight <= 100:
            raise ValueError(f"canary step weight must be within 1..100, got {weight}")
        if weight <= previous:
            raise ValueError("canary steps must be strictly increasing")
        previous = weight
    if steps[-1] != 100:
        raise ValueError("canary steps must end at 100")
    return steps


class RolloutState(BaseModel):
    """Traffic-shift progress of one deploying stage.

    Attributes:
        stage_id: Stage being rolled out.
        environment: Target environment.
        artifact_ref: Artifact receiving traffic.
        steps: Weight sequence, e.g. [10, 50, 100].
        current_step_index: Index into steps. Only ever increases.
        weight_applied: Whether steps[current_step_index] has been
            acknowledged by the deployer.
        baseline_error_rate: Environment error rate before the first shift.
        observation_window: Qualifying samples required per step.
        qualifying_samples: Qualifying samples so far in the current step.
        insufficient_samples: Window extensions so far in the current step.
        samples: Every sample taken, tagged with its step.
        decisions: Decision log.
        completed: Advanced past the 100% step.
        aborted: Traffic was pulled from the artifact.
    """

    stage_id: str = Field(..., min_length=1)
    environment: str = Field(..., min_length=1)
    artifact_ref: str = Field(..., min_length=1)
    steps: List[int]
    current_step_index: int = Field(default=0, ge=0)
    weight_applied: bool = False
    baseline_error_rate: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    observation_window: int = Field(default=3, ge=1)
    qualifying_samples: int = Field(default=0, ge=0)
    insufficient_samples: int = Field(default=0, ge=0)
    samples: List[HealthSample] = Field(default_factory=list)
    decisions: List[StepDecision] = Field(default_factory=list)
    completed: bool = False
    aborted: bool = False

    @field_validator("steps")
    @classmethod
    def validate_step_weights(cls, v: List[int]) -> List[int]:
        return validate_steps(v)

    @property
    def current_weight(self) -> int:
        return self.steps[self.current_step_index]

    @property
    def is_final_step(self) -> bool:
        return self.current_step_index == len(self.steps) - 1

    @property
    def is_finished(self) -> bool:
        return self.completed or self.aborted
