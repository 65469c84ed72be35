"""Approval coordination.

The coordinator never waits for a human. request_approval() creates a
record and notifies the sink; decide() applies the first decision to reach
a pending record; check_expiry() is called by the orchestrator's polling
loop and resolves overdue records as EXPIRED.

Records live on their StageExecution; the orchestrator resolves a stage ID
to its record and persists whatever the coordinator returns.
"""

from datetime import datetime
from typing import Iterable, Optional, Tuple

import structlog

from release_pipeline.approval.models import (
    ApprovalDecision,
    ApprovalOutcome,
    ApprovalRecord,
)
from release_pipeline.clock import Clock, utcnow
from release_pipeline.events.emitter import EventEmitter
from release_pipeline.events.models import EventType, PipelineEvent

logger = structlog.get_logger(__name__)

_DECIDABLE = (ApprovalDecision.APPROVED, ApprovalDecision.REJECTED)


class ApprovalCoordinator:
    """Creates, decides and expires approval records.

    Attributes:
        event_emitter: Notification sink for approval requests.
    """

    def __init__(self, event_emitter: EventEmitter, clock: Clock = utcnow):
        self.event_emitter = event_emitter
        self._clock = clock

    async def request_approval(
        self,
        stage_id: str,
        deadline: datetime,
        *,
        run_id: str,
        stage_name: str,
        environment: str,
        artifact_ref: str,
    ) -> ApprovalRecord:
        """Create a pending approval record and notify the sink.

        Notification is fire-and-forget: a delivery failure is logged and
        the record is still returned, since approvals can be given through
        the API or CLI without the notification.

        Args:
            stage_id: Stage being gated.
            deadline: Fixed expiry instant.
            run_id: Owning run.
            stage_name: Stage name for the notification.
            environment: Target environment for the notification.
            artifact_ref: Artifact awaiting promotion.

        Returns:
            The new PENDING record.
        """
        now = self._clock()
        if deadline <= now:
            raise ValueError("approval deadline must be in the future")

        record = ApprovalRecord(
            stage_id=stage_id,
            requested_at=now,
            deadline=deadline,
        )

        logger.info(
            "Approval requested",
            stage_id=stage_id,
            artifact_ref=artifact_ref,
            deadline=deadline.isoformat(),
        )

        try:
            await self.event_emitter.emit(
                PipelineEvent(
                    event_type=EventType.APPROVAL_REQUESTED,
                    run_id=run_id,
                    artifact_ref=artifact_ref,
                    stage_name=stage_name,
                    environment=environment,
                    details={
                        "stage_id": stage_id,
                        "deadline": deadline.isoformat(),
                    },
                )
            )
        except Exception:
            logger.exception(
                "Approval notification failed; approval still possible",
                stage_id=stage_id,
            )

        return record

    def decide(
        self,
        record: ApprovalRecord,
        actor: str,
        decision: ApprovalDecision,
        approvers: Optional[Iterable[str]] = None,
    ) -> ApprovalOutcome:
        """Apply a human decision to a record.

        The first decision wins. A record that is already resolved, or whose
        deadline has passed, refuses the decision; in the latter case the
        returned record is the EXPIRED one so the caller can persist it.

        Args:
            record: Current approval record.
            actor: Identity of the person deciding.
            decision: APPROVED or REJECTED.
            approvers: Allowed actors; empty or None allows anyone.

        Returns:
            ApprovalOutcome describing whether the decision took effect.
        """
        if decision not in _DECIDABLE:
            return ApprovalOutcome(
                accepted=False,
                record=record,
                error=f"decision must be approved or rejected, got {decision.value}",
            )

        if not actor or not actor.strip():
            return ApprovalOutcome(
                accepted=False, record=record, error="actor is required"
            )

        if record.is_resolved:
            logger.warning(
                "Decision on resolved approval ignored",
                stage_id=record.stage_id,
                existing=record.decision.value,
                attempted=decision.value,
                actor=actor,
            )
            return ApprovalOutcome(
                accepted=False,
                record=record,
                error=f"approval already {record.decision.value}",
            )

        expired, current = self.check_expiry(record)
        if expired:
            return ApprovalOutcome(
                accepted=False,
                record=current,
                error="approval deadline has passed",
            )

        allowed = set(approvers or ())
        if allowed and actor not in allowed:
            logger.warning(
                "Unauthorized approval attempt",
                stage_id=record.stage_id,
                actor=actor,
            )
            return ApprovalOutcome(
                accepted=False,
                record=record,
                error=f"actor {actor} is not an authorized approver",
            )

        resolved = record.model_copy(
            update={
                "decision": decision,
                "actor": actor,
                "decided_at": self._clock(),
            }
        )

        logger.info(
            "Approval decided",
            stage_id=record.stage_id,
            decision=decision.value,
            actor=actor,
        )
        return ApprovalOutcome(accepted=True, record=resolved)

    def check_expiry(self, record: ApprovalRecord) -> Tuple[bool, ApprovalRecord]:
        """Expire a pending record whose deadline has passed.

        Returns:
            (True, expired record) when the record expired on this call or
            earlier; (False, record) otherwise.
        """
        if record.decision == ApprovalDecision.EXPIRED:
            return True, record
        if record.is_resolved:
            return False, record

        now = self._clock()
        if now > record.deadline:
            logger.info(
                "Approval expired",
                stage_id=record.stage_id,
                deadline=record.deadline.isoformat(),
            )
            return True, record.model_copy(
                update={"decision": ApprovalDecision.EXPIRED, "decided_at": now}
            )

        return False, record
