"""Approval record models.

An ApprovalRecord is created when a stage that requires approval passes its
gate. Its deadline is fixed at creation and the record is immutable once it
leaves PENDING.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ApprovalDecision(str, Enum):
    """State of a human approval."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ApprovalRecord(BaseModel):
    """Human decision gating promotion of one stage.

    Attributes:
        stage_id: Stage the approval gates ("<run_id>:<stage_name>").
        requested_at: When the approval was requested (UTC).
        deadline: Instant after which a pending approval expires.
        decision: Current decision.
        actor: Identity of the deciding actor, once decided.
        decided_at: When the record was resolved.
    """

    model_config = ConfigDict(frozen=True)

    stage_id: str = Field(..., min_length=1)
    requested_at: datetime
    deadline: datetime
    decision: ApprovalDecision = ApprovalDecision.PENDING
    actor: Optional[str] = None
    decided_at: Optional[datetime] = None

    @property
    def is_resolved(self) -> bool:
        return self.decision != ApprovalDecision.PENDING


class ApprovalOutcome(BaseModel):
    """Structured result of a decide() call.

    ``accepted`` is False when the decision was not applied; ``record`` is
    always the current record (possibly newly expired) and ``error`` explains
    why the decision was refused.
    """

    model_config = ConfigDict(frozen=True)

    accepted: bool
    record: ApprovalRecord
    error: Optional[str] = None
