"""Rollback to last-known-good."""

from release_pipeline.rollback.manager import (
    ALERT_ENVIRONMENT_UNDEPLOYED,
    ALERT_ROLLBACK_FAILED,
    RollbackManager,
)
from release_pipeline.rollback.models import RollbackOutcome, RollbackResult

__all__ = [
    "ALERT_ENVIRONMENT_UNDEPLOYED",
    "ALERT_ROLLBACK_FAILED",
    "RollbackManager",
    "RollbackOutcome",
    "RollbackResult",
]
