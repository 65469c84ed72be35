"""Pipeline run state machine.

PipelineStateMachine is the only writer of PipelineRun documents. It
validates stage transitions against VALID_TRANSITIONS, refuses to deploy a
stage whose gate did not pass (or whose approval is missing), records a
timestamped StageTransition for every status change, and persists through
the StateRepository with optimistic locking.

check_invariants() inspects a run for states no valid sequence of
transitions can produce; the orchestrator quarantines such runs.
"""

from datetime import datetime
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

import structlog

from release_pipeline.approval.models import ApprovalDecision
from release_pipeline.clock import Clock, utcnow
from release_pipeline.definition import StageConfig
from release_pipeline.gates.models import GateDecision
from release_pipeline.state.models import (
    TERMINAL_STAGE_STATUSES,
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
)

logger = structlog.get_logger(__name__)

# (stage_id, transition) pair written to the audit trail
AuditEntry = Tuple[str, StageTransition]

_DEPLOY_STATUSES = frozenset({StageStatus.DEPLOYING, StageStatus.CANARYING})


class InvalidTransitionError(Exception):
    """Raised when a stage transition is not allowed.

    Attributes:
        stage_id: Stage the transition was attempted on.
        from_status: Current status.
        to_status: Attempted target status.
    """

    def __init__(
        self,
        stage_id: str,
        from_status: StageStatus,
        to_status: StageStatus,
        message: Optional[str] = None,
    ):
        self.stage_id = stage_id
        self.from_status = from_status
        self.to_status = to_status
        self.message = message or (
            f"Invalid transition for {stage_id} from {from_status.value} "
            f"to {to_status.value}"
        )
        super().__init__(self.message)


class RunNotFoundError(Exception):
    """Raised when a pipeline run does not exist."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Pipeline run not found: {run_id}")


class StageNotFoundError(Exception):
    """Raised when a stage ID does not resolve to a stage execution."""

    def __init__(self, stage_id: str):
        self.stage_id = stage_id
        super().__init__(f"Stage not found: {stage_id}")


class VersionConflictError(Exception):
    """Raised when optimistic locking detects a concurrent update.

    Attributes:
        run_id: The run with the conflict.
        expected_version: The version that was read before updating.
    """

    def __init__(self, run_id: str, expected_version: int):
        self.run_id = run_id
        self.expected_version = expected_version
        super().__init__(
            f"Version conflict for run {run_id}: expected {expected_version}"
        )


class InvariantViolationError(Exception):
    """Raised when a run is in a state no valid transition sequence produces.

    Attributes:
        run_id: The corrupted run.
        violations: Human-readable descriptions of each violation.
    """

    def __init__(self, run_id: str, violations: Sequence[str]):
        self.run_id = run_id
        self.violations = list(violations)
        super().__init__(
            f"Invariant violation in run {run_id}: {'; '.join(self.violations)}"
        )


@runtime_checkable
class StateRepository(Protocol):
    """Persistence contract for runs and per-environment state.

    Writes are atomic per entity. Runs use optimistic locking: the stored
    version must equal ``run.version - 1`` for update_with_version() to
    succeed.
    """

    async def create_run(self, run: PipelineRun) -> None:
        ...

    async def get_run(self, run_id: str) -> Optional[PipelineRun]:
        ...

    async def list_active_runs(self) -> List[PipelineRun]:
        ...

    async def update_with_version(
        self, run: PipelineRun, transitions: Sequence[AuditEntry] = ()
    ) -> bool:
        """Persist the run if nobody else wrote it since it was read.

        Args:
            run: Updated run carrying an incremented version.
            transitions: (stage_id, transition) pairs to append to the
                audit trail.

        Returns:
            True if the update succeeded, False on a version conflict.
        """
        ...

    async def get_last_known_good(self, environment: str) -> Optional[LastKnownGood]:
        ...

    async def set_last_known_good(self, record: LastKnownGood) -> None:
        ...

    async def get_environment_status(
        self, environment: str
    ) -> Optional[EnvironmentStatus]:
        ...

    async def set_environment_status(self, status: EnvironmentStatus) -> None:
        ...

    async def acquire_lease(
        self, environment: str, holder: str, expires_at: datetime, now: datetime
    ) -> bool:
        """Take or renew the lease if free, expired, or already ours."""
        ...

    async def release_lease(self, environment: str, holder: str) -> None:
        ...

    async def get_lease(self, environment: str) -> Optional[EnvironmentLease]:
        ...


def check_invariants(run: PipelineRun) -> List[str]:
    """Return every structural invariant the run violates.

    - stages follow the planned order
    - every stage but the last is terminal, and succeeded
    - a terminal run has no stage in flight
    - deploying statuses and success require a passing gate, and an
      approved decision where approval is required
    - a run with a rollback is never succeeded
    """
    violations: List[str] = []

    planned = [config.name for config in run.planned_stages]
    started = [stage.stage_name for stage in run.stages]
    if started != planned[: len(started)]:
        violations.append(f"stage order {started} does not follow plan {planned}")

    in_flight = [s.stage_id for s in run.stages if not s.is_terminal]
    if len(in_flight) > 1:
        violations.append(f"more than one non-terminal stage: {in_flight}")

    for stage in run.stages[:-1]:
        if stage.status != StageStatus.SUCCEEDED:
            violations.append(
                f"stage {stage.stage_id} is {stage.status.value} but a later "
                "stage was started"
            )

    if run.is_terminal and in_flight:
        violations.append(
            f"run is {run.status.value} with stages in flight: {in_flight}"
        )

    for stage in run.stages:
        reached_deploy = stage.status in _DEPLOY_STATUSES or (
            stage.status == StageStatus.SUCCEEDED
        )
        if not reached_deploy:
            continue
        if stage.gate_verdict is None or stage.gate_verdict.decision != GateDecision.PASS:
            violations.append(f"stage {stage.stage_id} deployed without a passing gate")
        if stage.requires_approval and (
            stage.approval is None
            or stage.approval.decision != ApprovalDecision.APPROVED
        ):
            violations.append(f"stage {stage.stage_id} deployed without approval")

    if run.status == RunStatus.SUCCEEDED and run.had_rollback:
        violations.append("run is succeeded but a stage was rolled back")

    return violations


class PipelineStateMachine:
    """Validated, versioned writes to pipeline runs.

    Every method takes the run as last read, builds the updated document
    with version + 1, and persists it with optimistic locking. Callers
    re-read and retry on VersionConflictError.

    Attributes:
        repository: The state repository for persistence.
    """

    def __init__(self, repository: StateRepository, clock: Clock = utcnow):
        self.repository = repository
        self._clock = clock

    async def create(
        self,
        run_id: str,
        artifact_ref: str,
        artifact_digest: str,
        planned_stages: Sequence[StageConfig],
    ) -> PipelineRun:
        """Create a new run in PENDING with no stages started."""
        now = self._clock()
        run = PipelineRun(
            run_id=run_id,
            artifact_ref=artifact_ref,
            artifact_digest=artifact_digest,
            planned_stages=list(planned_stages),
            status=RunStatus.PENDING,
            created_at=now,
            updated_at=now,
            version=1,
        )

        logger.info(
            "Creating pipeline run",
            run_id=run_id,
            artifact_ref=artifact_ref,
            stages=[s.name for s in planned_stages],
        )
        await self.repository.create_run(run)
        return run

    async def get(self, run_id: str) -> PipelineRun:
        run = await self.repository.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def start_next_stage(self, run: PipelineRun) -> PipelineRun:
        """Append the next planned stage in PENDING and mark the run RUNNING.

        Raises:
            InvalidTransitionError: If the current stage has not succeeded.
            ValueError: If every planned stage was already started.
        """
        config = run.next_stage_config()
        if config is None:
            raise ValueError(f"run {run.run_id} has no more stages to start")

        current = run.current_stage
        if current is not None and current.status != StageStatus.SUCCEEDED:
            raise InvalidTransitionError(
                current.stage_id,
                current.status,
                StageStatus.PENDING,
                f"Cannot start {config.name} while {current.stage_id} is "
                f"{current.status.value}",
            )

        stage = StageExecution(
            stage_id=make_stage_id(run.run_id, config.name),
            stage_name=config.name,
            environment=config.environment,
            requires_approval=config.requires_approval,
            rollback_on_failure=config.rollback_on_failure,
        )

        logger.info("Starting stage", run_id=run.run_id, stage_id=stage.stage_id)
        return await self._persist(
            run,
            {"stages": run.stages + [stage], "status": RunStatus.RUNNING},
        )

    async def transition(
        self,
        run: PipelineRun,
        stage_id: str,
        to_status: StageStatus,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        stage_updates: Optional[Dict[str, Any]] = None,
        run_updates: Optional[Dict[str, Any]] = None,
    ) -> PipelineRun:
        """Move a stage to a new status.

        Args:
            run: Run as last read.
            stage_id: Stage to transition.
            to_status: Target status.
            reason: Human-readable reason stored on the stage.
            details: Extra metadata for the transition record.
            stage_updates: Other stage fields written in the same update.
            run_updates: Run fields written in the same update.

        Raises:
            StageNotFoundError: If the stage is not part of the run.
            InvalidTransitionError: If the transition is not allowed.
            VersionConflictError: If a concurrent update occurred.
        """
        stage = run.find_stage(stage_id)
        if stage is None:
            raise StageNotFoundError(stage_id)

        from_status = stage.status
        if not is_valid_transition(from_status, to_status):
            logger.warning(
                "Invalid stage transition attempted",
                stage_id=stage_id,
                from_status=from_status.value,
                to_status=to_status.value,
            )
            raise InvalidTransitionError(stage_id, from_status, to_status)

        candidate = stage.model_copy(update=stage_updates or {})
        if to_status in _DEPLOY_STATUSES:
            self._check_deploy_allowed(candidate)

        now = self._clock()
        transition_details = dict(details or {})
        if reason:
            transition_details.setdefault("reason", reason)
        transition = StageTransition(
            from_status=from_status,
            to_status=to_status,
            timestamp=now,
            details=transition_details,
        )

        update: Dict[str, Any] = dict(stage_updates or {})
        update["status"] = to_status
        update["history"] = stage.history + [transition]
        if reason is not None:
            update["reason"] = reason
        if from_status == StageStatus.PENDING:
            update["started_at"] = now
        if to_status in TERMINAL_STAGE_STATUSES:
            update["ended_at"] = now

        updated_stage = stage.model_copy(update=update)
        stages = [updated_stage if s.stage_id == stage_id else s for s in run.stages]

        logger.info(
            "Transitioning stage",
            run_id=run.run_id,
            stage_id=stage_id,
            from_status=from_status.value,
            to_status=to_status.value,
            reason=reason,
        )

        run_fields: Dict[str, Any] = dict(run_updates or {})
        run_fields["stages"] = stages
        return await self._persist(run, run_fields, [(stage_id, transition)])

    async def update_stage(
        self, run: PipelineRun, stage_id: str, **fields: Any
    ) -> PipelineRun:
        """Write stage fields without changing its status."""
        stage = run.find_stage(stage_id)
        if stage is None:
            raise StageNotFoundError(stage_id)
        if "status" in fields:
            raise ValueError("use transition() to change a stage status")

        updated_stage = stage.model_copy(update=fields)
        stages = [updated_stage if s.stage_id == stage_id else s for s in run.stages]
        return await self._persist(run, {"stages": stages})

    async def update_run(self, run: PipelineRun, **fields: Any) -> PipelineRun:
        """Write run-level fields such as status, reason or abort_requested."""
        if "stages" in fields:
            raise ValueError("use transition() or update_stage() to change stages")
        if "status" in fields:
            logger.info(
                "Setting run status",
                run_id=run.run_id,
                from_status=run.status.value,
                to_status=fields["status"].value,
            )
        return await self._persist(run, fields)

    def _check_deploy_allowed(self, stage: StageExecution) -> None:
        verdict = stage.gate_verdict
        if verdict is None or verdict.decision != GateDecision.PASS:
            raise InvalidTransitionError(
                stage.stage_id,
                stage.status,
                StageStatus.DEPLOYING,
                f"Stage {stage.stage_id} cannot deploy without a passing gate verdict",
            )
        if stage.requires_approval and (
            stage.approval is None
            or stage.approval.decision != ApprovalDecision.APPROVED
        ):
            raise InvalidTransitionError(
                stage.stage_id,
                stage.status,
                StageStatus.DEPLOYING,
                f"Stage {stage.stage_id} cannot deploy without an approved approval",
            )

    async def _persist(
        self,
        run: PipelineRun,
        fields: Dict[str, Any],
        transitions: Sequence[AuditEntry] = (),
    ) -> PipelineRun:
        update = dict(fields)
        update["updated_at"] = self._clock()
        update["version"] = run.version + 1
        updated = run.model_copy(update=update)

        success = await self.repository.update_with_version(updated, transitions)
        if not success:
            raise VersionConflictError(run.run_id, run.version)
        return updated
