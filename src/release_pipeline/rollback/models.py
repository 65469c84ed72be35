"""Rollback result models."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class RollbackOutcome(str, Enum):
    """What a rollback left the environment in.

    Attributes:
        RESTORED: The last-known-good artifact is serving 100% of traffic.
        UNDEPLOYED: No last-known-good existed; the environment is marked
            undeployed.
        FAILED: The redeploy kept failing; manual intervention required.
    """

    RESTORED = "restored"
    UNDEPLOYED = "undeployed"
    FAILED = "failed"


class RollbackResult(BaseModel):
    """Structured outcome of RollbackManager.rollback()."""

    model_config = ConfigDict(frozen=True)

    environment: str
    outcome: RollbackOutcome
    restored_artifact_ref: Optional[str] = None
    attempts: int = Field(default=0, ge=0)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome != RollbackOutcome.FAILED
