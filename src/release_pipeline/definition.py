"""Pipeline definition: the ordered stages a run is promoted through.

Loaded from YAML with ``yaml.safe_load`` and validated with pydantic, so the
per-stage knobs are explicit fields rather than free-form maps:

    stages:
      - name: dev
        environment: dev
      - name: staging
        environment: staging
        requires_approval: true
        approval_deadline: 86400
      - name: production
        environment: production
        requires_approval: true
        approvers: [release-manager]
        canary_steps: [10, 50, 100]
        observation_window: 3
        rollback_on_failure: true
        gate_policy:
          name: production
          max_counts: {critical: 0, high: 0}
"""

from pathlib import Path
from typing import List, Optional, Union

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from release_pipeline.gates.models import GatePolicy, Severity
from release_pipeline.rollout.models import validate_steps

logger = structlog.get_logger(__name__)


class ConfigurationError(Exception):
    """Raised when a pipeline definition cannot be loaded.

    Attributes:
        path: File the definition was read from, if any.
    """

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


class StageConfig(BaseModel):
    """Explicit configuration of one promotion stage.

    Attributes:
        name: Unique stage name within the pipeline.
        environment: Target environment deployed by the stage.
        requires_approval: Wait for a human decision after the gate passes.
        approval_deadline: Seconds before a pending approval expires.
        approvers: Actors allowed to decide; empty allows anyone.
        gate_policy: Severity limits for the stage's gate.
        canary_steps: Traffic weights; [100] is a plain deploy.
        observation_window: Qualifying health samples per canary step.
        rollback_on_failure: Restore last-known-good if the stage fails
            after traffic was shifted.
    """

    name: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9_.-]+$")
    environment: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9_.-]+$")
    requires_approval: bool = False
    approval_deadline: int = Field(default=86400, ge=1)
    approvers: List[str] = Field(default_factory=list)
    gate_policy: GatePolicy = Field(default_factory=GatePolicy)
    canary_steps: List[int] = Field(default_factory=lambda: [100])
    observation_window: Optional[int] = Field(default=None, ge=1)
    rollback_on_failure: bool = False

    @field_validator("canary_steps")
    @classmethod
    def validate_canary_steps(cls, v: List[int]) -> List[int]:
        return validate_steps(v)

    @property
    def is_canary(self) -> bool:
        return len(self.canary_steps) > 1


class PipelineDefinition(BaseModel):
    """Ordered list of stages a run is promoted through."""

    name: str = "default"
    stages: List[StageConfig] = Field(..., min_length=1)

    @model_validator(mode="after")
    def validate_unique_stage_names(self) -> "PipelineDefinition":
        names = [stage.name for stage in self.stages]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate stage names: {', '.join(duplicates)}")
        return self

    def stage(self, name: str) -> StageConfig:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)


def default_pipeline_definition() -> PipelineDefinition:
    """dev -> staging (approval) -> production (approval, canary, rollback)."""
    return PipelineDefinition(
        name="default",
        stages=[
            StageConfig(name="dev", environment="dev"),
            StageConfig(
                name="staging",
                environment="staging",
                requires_approval=True,
            ),
            StageConfig(
                name="production",
                environment="production",
                requires_approval=True,
                canary_steps=[10, 50, 100],
                observation_window=3,
                rollback_on_failure=True,
                gate_policy=GatePolicy(
                    name="production",
                    max_counts={Severity.CRITICAL: 0, Severity.HIGH: 0},
                ),
            ),
        ],
    )


def load_pipeline_definition(
    path: Optional[Union[str, Path]] = None,
) -> PipelineDefinition:
    """Load a pipeline definition from YAML, or the default one.

    Args:
        path: YAML file; None returns default_pipeline_definition().

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid.
    """
    if path is None:
        return default_pipeline_definition()

    path = Path(path)
    try:
        with path.open("r") as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"pipeline definition not found: {path}", str(path)) from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML in {path}: {e}", str(path)) from e

    if not isinstance(raw, dict):
        raise ConfigurationError(
            f"pipeline definition must be a mapping, got {type(raw).__name__}",
            str(path),
        )

    try:
        definition = PipelineDefinition.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"invalid pipeline definition {path}: {e}", str(path)) from e

    logger.info(
        "Loaded pipeline definition",
        path=str(path),
        name=definition.name,
        stages=[s.name for s in definition.stages],
    )
    return definition
