"""Human approval checkpoints."""

from release_pipeline.approval.coordinator import ApprovalCoordinator
from release_pipeline.approval.models import (
    ApprovalDecision,
    ApprovalOutcome,
    ApprovalRecord,
)

__all__ = [
    "ApprovalCoordinator",
    "ApprovalDecision",
    "ApprovalOutcome",
    "ApprovalRecord",
]
