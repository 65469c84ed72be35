"""Canary rollout controller and its models."""

from release_pipeline.rollout.controller import (
    RolloutController,
    RolloutPolicy,
    TickResult,
)
from release_pipeline.rollout.models import (
    HealthSample,
    RolloutDecision,
    RolloutState,
    StepDecision,
)

__all__ = [
    "HealthSample",
    "RolloutController",
    "RolloutDecision",
    "RolloutPolicy",
    "RolloutState",
    "StepDecision",
    "TickResult",
]
