"""Release pipeline orchestrator.

Drives each PipelineRun through its planned stages:

    pending → awaiting_gate → [awaiting_approval] → deploying
    → [canarying] → succeeded

advance() is poll-driven and never waits: it moves the run as far as it can
without blocking and returns. Waiting for scanner reports, a human decision,
the rollout observation window or the environment lease all end in "no
progress" until a later poll.

The orchestrator is the only place that turns component results (verdicts,
approval outcomes, rollout decisions, rollback results) into transitions.
All writes go through PipelineStateMachine; traffic shifts are persisted
before they are issued so a restarted process re-issues an unacknowledged
shift.

Post-terminal work (pulling traffic, rolling back, recording last-known-good,
starting the next stage, finalizing the run) runs while the run is still
RUNNING, so a crash in the middle is finished by the next advance.
"""

import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from release_pipeline.approval.coordinator import ApprovalCoordinator
from release_pipeline.approval.models import ApprovalDecision, ApprovalOutcome
from release_pipeline.clock import Clock, utcnow
from release_pipeline.definition import PipelineDefinition
from release_pipeline.deploy.base import DeployerError, TransientInfraError
from release_pipeline.events.emitter import EventEmitter
from release_pipeline.events.models import AlertSeverity, EventType, PipelineEvent
from release_pipeline.gates.evaluator import GateEvaluator
from release_pipeline.gates.models import Finding, GateDecision
from release_pipeline.locks import EnvironmentLeaseManager, KeyedLocks
from release_pipeline.rollback.manager import RollbackManager
from release_pipeline.rollback.models import RollbackOutcome
from release_pipeline.rollout.controller import RolloutController
from release_pipeline.rollout.models import RolloutDecision, RolloutState
from release_pipeline.sources.artifacts import ArtifactResolver
from release_pipeline.sources.scanners import Scanner
from release_pipeline.state.machine import (
    InvalidTransitionError,
    PipelineStateMachine,
    StageNotFoundError,
    VersionConflictError,
    check_invariants,
)
from release_pipeline.state.models import (
    EnvironmentStatus,
    LastKnownGood,
    PipelineRun,
    RunStatus,
    StageExecution,
    StageStatus,
    parse_stage_id,
)

logger = structlog.get_logger(__name__)

ABORT_REASON = "aborted by operator"
ALERT_INVARIANT_VIOLATION = "invariant_violation"
ALERT_INFRASTRUCTURE_FAILURE = "infrastructure_failure"

_ABORT_RETRIES = 3


class SubmissionRejectedError(Exception):
    """Raised when an artifact cannot be submitted.

    Attributes:
        artifact_ref: The rejected reference.
        reason: Why it was rejected.
    """

    def __init__(self, artifact_ref: str, reason: str):
        self.artifact_ref = artifact_ref
        self.reason = reason
        super().__init__(f"Submission of {artifact_ref!r} rejected: {reason}")


class RunTerminalError(Exception):
    """Raised when an operation needs a run that is still in flight."""

    def __init__(self, run_id: str, status: RunStatus):
        self.run_id = run_id
        self.status = status
        super().__init__(f"Run {run_id} is already {status.value}")


@dataclass(frozen=True)
class AdvanceResult:
    """Outcome of one advance() call.

    ``progressed`` is True when a stage or run status changed.
    """

    progressed: bool
    run: PipelineRun


def pin_artifact_ref(artifact_ref: str, digest: str) -> str:
    """Make a reference content-addressed by appending the digest."""
    if "@" in artifact_ref:
        return artifact_ref
    return f"{artifact_ref}@{digest}"


class PipelineOrchestrator:
    """Top-level state machine for release pipeline runs.

    Accepts all dependencies via constructor injection.

    Attributes:
        state_machine: Validated, versioned writes to runs.
        definition: Stages captured by new runs.
        artifact_resolver: Builder contract used at submission.
        scanners: Finding sources consulted by every gate.
        gate_evaluator: Applies gate policies.
        approval_coordinator: Creates, decides and expires approvals.
        rollout_controller: Applies canary steps and judges health.
        rollback_manager: Restores last-known-good.
        lease_manager: Per-environment deploy lease.
        event_emitter: Pipeline events for logs, metrics and notifications.
        gate_timeout: How long a gate waits for missing reports.
    """

    def __init__(
        self,
        state_machine: PipelineStateMachine,
        definition: PipelineDefinition,
        artifact_resolver: ArtifactResolver,
        scanners: Sequence[Scanner],
        gate_evaluator: GateEvaluator,
        approval_coordinator: ApprovalCoordinator,
        rollout_controller: RolloutController,
        rollback_manager: RollbackManager,
        lease_manager: EnvironmentLeaseManager,
        event_emitter: EventEmitter,
        gate_timeout_seconds: float = 1800,
        clock: Clock = utcnow,
        run_id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        self.state_machine = state_machine
        self.repository = state_machine.repository
        self.definition = definition
        self.artifact_resolver = artifact_resolver
        self.scanners = list(scanners)
        self.gate_evaluator = gate_evaluator
        self.approval_coordinator = approval_coordinator
        self.rollout_controller = rollout_controller
        self.rollback_manager = rollback_manager
        self.lease_manager = lease_manager
        self.event_emitter = event_emitter
        self.gate_timeout = timedelta(seconds=gate_timeout_seconds)
        self._clock = clock
        self._new_run_id = run_id_factory
        self._run_locks = KeyedLocks()
        self._environment_locks = KeyedLocks()

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def submit(self, artifact_ref: str) -> PipelineRun:
        """Create a run for an artifact.

        The stored reference is pinned to the digest reported by the builder.

        Raises:
            SubmissionRejectedError: If the reference is empty or unknown.
            ArtifactResolutionError: If the builder could not be queried.
        """
        artifact_ref = (artifact_ref or "").strip()
        if not artifact_ref:
            raise SubmissionRejectedError(artifact_ref, "artifact reference is empty")

        try:
            info = await self.artifact_resolver.get_artifact(artifact_ref)
        except ValueError as e:
            raise SubmissionRejectedError(artifact_ref, str(e)) from e

        if not info.exists:
            raise SubmissionRejectedError(artifact_ref, "artifact does not exist")
        if not info.digest:
            raise SubmissionRejectedError(artifact_ref, "artifact has no content digest")

        run = await self.state_machine.create(
            run_id=self._new_run_id(),
            artifact_ref=pin_artifact_ref(artifact_ref, info.digest),
            artifact_digest=info.digest,
            planned_stages=self.definition.stages,
        )
        logger.info(
            "Run submitted",
            run_id=run.run_id,
            artifact_ref=run.artifact_ref,
            digest=info.digest,
        )
        return run

    async def advance(self, run_id: str) -> AdvanceResult:
        """Progress a run as far as possible without waiting.

        Idempotent: calling it again on an unchanged world makes no further
        progress.

        Raises:
            RunNotFoundError: If the run does not exist.
        """
        async with self._run_locks.hold(run_id):
            run = await self.state_machine.get(run_id)
            if run.is_terminal:
                return AdvanceResult(False, run)

            violations = check_invariants(run)
            if violations:
                return AdvanceResult(True, await self._quarantine(run, violations))

            try:
                return await self._step(run)
            except InvalidTransitionError as e:
                fresh = await self.state_machine.get(run_id)
                return AdvanceResult(True, await self._quarantine(fresh, [str(e)]))
            except VersionConflictError:
                logger.warning("Run changed concurrently; will retry", run_id=run_id)
                return AdvanceResult(False, await self.state_machine.get(run_id))

    async def decide(
        self, stage_id: str, actor: str, decision: ApprovalDecision
    ) -> ApprovalOutcome:
        """Record a human approval decision for a stage.

        The decision only updates the approval record; the next advance()
        acts on it.

        Raises:
            StageNotFoundError: If the stage does not exist or has no approval.
            RunNotFoundError: If the owning run does not exist.
        """
        try:
            run_id, _ = parse_stage_id(stage_id)
        except ValueError as e:
            raise StageNotFoundError(stage_id) from e

        async with self._run_locks.hold(run_id):
            run = await self.state_machine.get(run_id)
            stage = run.find_stage(stage_id)
            if stage is None or stage.approval is None:
                raise StageNotFoundError(stage_id)

            if run.is_terminal or stage.is_terminal:
                return ApprovalOutcome(
                    accepted=False,
                    record=stage.approval,
                    error=f"stage is already {stage.status.value}",
                )

            config = run.stage_config(stage.stage_name)
            outcome = self.approval_coordinator.decide(
                stage.approval, actor, decision, config.approvers
            )
            if outcome.record != stage.approval:
                await self.state_machine.update_stage(
                    run, stage_id, approval=outcome.record
                )
            return outcome

    async def abort(self, run_id: str) -> PipelineRun:
        """Request an abort, honored by the next advance().

        Raises:
            RunNotFoundError: If the run does not exist.
            RunTerminalError: If the run already finished.
        """
        conflicts = 0
        async with self._run_locks.hold(run_id):
            while True:
                run = await self.state_machine.get(run_id)
                if run.is_terminal:
                    raise RunTerminalError(run_id, run.status)
                if run.abort_requested:
                    return run
                try:
                    run = await self.state_machine.update_run(run, abort_requested=True)
                except VersionConflictError:
                    conflicts += 1
                    if conflicts >= _ABORT_RETRIES:
                        raise
                    continue
                logger.info("Abort requested", run_id=run_id)
                return run

    async def status(self, run_id: str) -> PipelineRun:
        """Current state of a run.

        Raises:
            RunNotFoundError: If the run does not exist.
        """
        return await self.state_machine.get(run_id)

    async def list_active(self) -> List[PipelineRun]:
        return await self.repository.list_active_runs()

    # -------------------------------------------------------------------------
    # Stepping
    # -------------------------------------------------------------------------

    async def _step(self, run: PipelineRun) -> AdvanceResult:
        stage = run.current_stage

        if stage is None:
            if run.abort_requested:
                run = await self._finish_run(run, RunStatus.FAILED, ABORT_REASON)
                return AdvanceResult(True, run)
            run = await self._start_next_stage(run)
            return await self._enter_gate(run, run.current_stage)

        if stage.is_terminal:
            return await self._after_terminal_stage(run, stage)

        if run.abort_requested:
            if stage.status in (StageStatus.DEPLOYING, StageStatus.CANARYING):
                return await self._abort_deploy(run, stage, ABORT_REASON)
            return await self._fail_stage(run, stage, ABORT_REASON)

        if stage.status == StageStatus.PENDING:
            return await self._enter_gate(run, stage)
        if stage.status == StageStatus.AWAITING_GATE:
            return await self._evaluate_gate(run, stage)
        if stage.status == StageStatus.AWAITING_APPROVAL:
            return await self._check_approval(run, stage)
        if stage.status == StageStatus.DEPLOYING:
            return await self._continue_deploy(run, stage)
        if stage.status == StageStatus.CANARYING:
            return await self._continue_canary(run, stage)

        raise InvalidTransitionError(stage.stage_id, stage.status, stage.status)

    async def _start_next_stage(self, run: PipelineRun) -> PipelineRun:
        run = await self.state_machine.start_next_stage(run)
        stage = run.current_stage
        await self._emit_transition(run, stage, None, StageStatus.PENDING)
        return run

    async def _enter_gate(
        self, run: PipelineRun, stage: StageExecution
    ) -> AdvanceResult:
        run = await self._transition(run, stage, StageStatus.AWAITING_GATE)
        result = await self._evaluate_gate(run, run.find_stage(stage.stage_id))
        return AdvanceResult(True, result.run)

    # -------------------------------------------------------------------------
    # Gate
    # -------------------------------------------------------------------------

    async def _collect_findings(self, artifact_ref: str) -> Optional[List[Finding]]:
        """Findings from every scanner, or None if any report is missing."""
        findings: List[Finding] = []
        missing = False
        for scanner in self.scanners:
            try:
                result = await scanner.get_findings(artifact_ref)
            except Exception as e:
                logger.warning(
                    "Scanner unavailable; treating report as missing",
                    scanner=getattr(scanner, "name", type(scanner).__name__),
                    error=str(e),
                )
                result = None
            if result is None:
                missing = True
            else:
                findings.extend(result)
        return None if missing else findings

    async def _evaluate_gate(
        self, run: PipelineRun, stage: StageExecution
    ) -> AdvanceResult:
        if stage.gate_verdict is not None:
            # Verdict already passed; waiting for the environment lease
            return await self._begin_deploy(run, stage)

        config = run.stage_config(stage.stage_name)
        findings = await self._collect_findings(run.artifact_ref)

        now = self._clock()
        if findings is None:
            started = stage.started_at or now
            if now - started < self.gate_timeout:
                return AdvanceResult(False, run)
            await self._emit(
                run,
                EventType.TIMEOUT,
                stage,
                {"operation": "gate", "stage": stage.stage_name},
            )

        verdict = self.gate_evaluator.evaluate(
            stage.stage_name, findings, evaluated_at=now, policy=config.gate_policy
        )

        if verdict.decision == GateDecision.FAIL:
            return await self._fail_stage(
                run,
                stage,
                f"gate failed: {verdict.reason}",
                stage_updates={"gate_verdict": verdict},
            )

        if stage.requires_approval:
            approval = await self.approval_coordinator.request_approval(
                stage.stage_id,
                now + timedelta(seconds=config.approval_deadline),
                run_id=run.run_id,
                stage_name=stage.stage_name,
                environment=stage.environment,
                artifact_ref=run.artifact_ref,
            )
            run = await self._transition(
                run,
                stage,
                StageStatus.AWAITING_APPROVAL,
                reason="waiting for approval",
                stage_updates={"gate_verdict": verdict, "approval": approval},
            )
            return AdvanceResult(True, run)

        run = await self.state_machine.update_stage(
            run, stage.stage_id, gate_verdict=verdict
        )
        result = await self._begin_deploy(run, run.find_stage(stage.stage_id))
        return AdvanceResult(True, result.run)

    # -------------------------------------------------------------------------
    # Approval
    # -------------------------------------------------------------------------

    async def _check_approval(
        self, run: PipelineRun, stage: StageExecution
    ) -> AdvanceResult:
        record = stage.approval
        if record is None:
            raise InvalidTransitionError(
                stage.stage_id,
                stage.status,
                StageStatus.DEPLOYING,
                f"Stage {stage.stage_id} is awaiting approval without a record",
            )

        expired, record = self.approval_coordinator.check_expiry(record)
        if expired:
            await self._emit(
                run,
                EventType.TIMEOUT,
                stage,
                {"operation": "approval", "stage": stage.stage_name},
            )
            return await self._fail_stage(
                run, stage, "approval expired", stage_updates={"approval": record}
            )

        if record.decision == ApprovalDecision.REJECTED:
            return await self._fail_stage(
                run, stage, f"approval rejected by {record.actor}"
            )

        if record.decision == ApprovalDecision.APPROVED:
            return await self._begin_deploy(run, stage)

        return AdvanceResult(False, run)

    # -------------------------------------------------------------------------
    # Deploy and canary
    # -------------------------------------------------------------------------

    async def _begin_deploy(
        self, run: PipelineRun, stage: StageExecution
    ) -> AdvanceResult:
        if not await self.lease_manager.acquire(stage.environment, run.run_id):
            return AdvanceResult(False, run)

        config = run.stage_config(stage.stage_name)
        try:
            rollout = await self.rollout_controller.start_rollout(
                stage.stage_id,
                stage.environment,
                run.artifact_ref,
                config.canary_steps,
                config.observation_window,
            )
        except DeployerError as e:
            await self._alert_infrastructure(run, stage, e)
            return await self._fail_stage(run, stage, f"deploy failed: {e}")

        # Persisted before the first shift is issued
        run = await self._transition(
            run,
            stage,
            StageStatus.DEPLOYING,
            reason=f"deploying {run.artifact_ref}",
            stage_updates={"rollout": rollout, "traffic_shifted": True},
        )
        return await self._apply_weight(run, run.find_stage(stage.stage_id))

    async def _apply_weight(
        self, run: PipelineRun, stage: StageExecution
    ) -> AdvanceResult:
        """Issue the current step's shift, then record it as applied."""
        try:
            rollout = await self.rollout_controller.apply_current_step(stage.rollout)
        except DeployerError as e:
            await self._alert_infrastructure(run, stage, e)
            return await self._abort_deploy(run, stage, f"traffic shift failed: {e}")

        run = await self.state_machine.update_stage(
            run, stage.stage_id, rollout=rollout
        )
        stage = run.find_stage(stage.stage_id)
        return await self._after_weight_applied(run, stage)

    async def _after_weight_applied(
        self, run: PipelineRun, stage: StageExecution
    ) -> AdvanceResult:
        if stage.status == StageStatus.DEPLOYING:
            if len(stage.rollout.steps) == 1:
                return await self._succeed_stage(run, stage, stage.rollout)
            run = await self._transition(
                run, stage, StageStatus.CANARYING, reason="observing canary"
            )
        return AdvanceResult(True, run)

    async def _continue_deploy(
        self, run: PipelineRun, stage: StageExecution
    ) -> AdvanceResult:
        if not await self.lease_manager.acquire(stage.environment, run.run_id):
            logger.warning(
                "Deploying stage lost its environment lease",
                stage_id=stage.stage_id,
                environment=stage.environment,
            )
            return AdvanceResult(False, run)

        if not stage.rollout.weight_applied:
            return await self._apply_weight(run, stage)
        return await self._after_weight_applied(run, stage)

    async def _continue_canary(
        self, run: PipelineRun, stage: StageExecution
    ) -> AdvanceResult:
        if not await self.lease_manager.acquire(stage.environment, run.run_id):
            logger.warning(
                "Canarying stage lost its environment lease",
                stage_id=stage.stage_id,
                environment=stage.environment,
            )
            return AdvanceResult(False, run)

        rollout = stage.rollout
        if rollout.completed:
            return await self._succeed_stage(run, stage, rollout)
        if not rollout.weight_applied:
            return await self._apply_weight(run, stage)

        tick = await self.rollout_controller.tick(rollout)

        if tick.decision == RolloutDecision.HOLD:
            run = await self.state_machine.update_stage(
                run, stage.stage_id, rollout=tick.state
            )
            return AdvanceResult(False, run)

        if tick.decision == RolloutDecision.ABORT:
            return await self._abort_deploy(
                run, stage, f"rollout aborted: {tick.reason}", rollout=tick.state
            )

        if tick.state.completed:
            return await self._succeed_stage(run, stage, tick.state)

        # Next step index persisted before its shift is issued
        run = await self.state_machine.update_stage(
            run, stage.stage_id, rollout=tick.state
        )
        return await self._apply_weight(run, run.find_stage(stage.stage_id))

    async def _abort_deploy(
        self,
        run: PipelineRun,
        stage: StageExecution,
        reason: str,
        rollout: Optional[RolloutState] = None,
    ) -> AdvanceResult:
        """Fail a deploying stage; traffic removal and rollback follow."""
        updates: Dict[str, Any] = {
            "rollback_pending": stage.rollback_on_failure and stage.traffic_shifted
        }
        if rollout is not None:
            updates["rollout"] = rollout
        return await self._fail_stage(run, stage, reason, stage_updates=updates)

    # -------------------------------------------------------------------------
    # Terminal stages
    # -------------------------------------------------------------------------

    async def _succeed_stage(
        self, run: PipelineRun, stage: StageExecution, rollout: RolloutState
    ) -> AdvanceResult:
        run = await self._transition(
            run,
            stage,
            StageStatus.SUCCEEDED,
            reason=f"{run.artifact_ref} serving 100% of {stage.environment}",
            stage_updates={"rollout": rollout},
        )
        result = await self._after_terminal_stage(run, run.find_stage(stage.stage_id))
        return AdvanceResult(True, result.run)

    async def _fail_stage(
        self,
        run: PipelineRun,
        stage: StageExecution,
        reason: str,
        stage_updates: Optional[Dict[str, Any]] = None,
    ) -> AdvanceResult:
        run = await self._transition(
            run, stage, StageStatus.FAILED, reason=reason, stage_updates=stage_updates
        )
        await self._emit(
            run, EventType.ERROR, stage, {"stage": stage.stage_name, "reason": reason}
        )
        result = await self._after_terminal_stage(run, run.find_stage(stage.stage_id))
        return AdvanceResult(True, result.run)

    async def _after_terminal_stage(
        self, run: PipelineRun, stage: StageExecution
    ) -> AdvanceResult:
        """Finish the side effects of a terminal stage, then move the run on.

        Every step is safe to repeat after a crash.
        """
        if stage.status == StageStatus.SUCCEEDED:
            await self._record_success(run, stage)
            await self.lease_manager.release(stage.environment, run.run_id)
            if run.abort_requested:
                run = await self._finish_run(run, RunStatus.FAILED, ABORT_REASON)
            elif run.next_stage_config() is None:
                run = await self._finish_run(run, RunStatus.SUCCEEDED, None)
            else:
                run = await self._start_next_stage(run)
            return AdvanceResult(True, run)

        if stage.status == StageStatus.FAILED:
            run = await self._pull_traffic(run, stage)
            stage = run.find_stage(stage.stage_id)

            if stage.rollback_pending:
                return await self._roll_back(run, stage)

            await self.lease_manager.release(stage.environment, run.run_id)
            run = await self._finish_run(
                run,
                RunStatus.FAILED,
                f"stage {stage.stage_name} failed: {stage.reason}",
            )
            return AdvanceResult(True, run)

        # ROLLED_BACK
        await self.lease_manager.release(stage.environment, run.run_id)
        run = await self._finish_run(
            run,
            RunStatus.ROLLED_BACK,
            f"stage {stage.stage_name} rolled back: {stage.reason}",
        )
        return AdvanceResult(True, run)

    async def _pull_traffic(
        self, run: PipelineRun, stage: StageExecution
    ) -> PipelineRun:
        """Revert the failed artifact's weight to 0 in one step."""
        rollout = stage.rollout
        if rollout is None or not stage.traffic_shifted or rollout.aborted:
            return run
        try:
            rollout = await self.rollout_controller.abort(rollout, stage.reason or "")
        except DeployerError as e:
            logger.error(
                "Could not revert traffic to 0",
                stage_id=stage.stage_id,
                environment=stage.environment,
                error=str(e),
            )
            rollout = rollout.model_copy(update={"aborted": True})
        return await self.state_machine.update_stage(
            run, stage.stage_id, rollout=rollout
        )

    async def _roll_back(
        self, run: PipelineRun, stage: StageExecution
    ) -> AdvanceResult:
        result = await self.rollback_manager.rollback(
            stage.environment,
            run_id=run.run_id,
            failed_artifact_ref=run.artifact_ref,
            stage_name=stage.stage_name,
        )

        if result.outcome == RollbackOutcome.FAILED:
            await self.lease_manager.release(stage.environment, run.run_id)
            run = await self.state_machine.update_stage(
                run, stage.stage_id, rollback_pending=False
            )
            run = await self._finish_run(
                run,
                RunStatus.FAILED,
                f"stage {stage.stage_name} failed: {stage.reason}; "
                f"rollback failed: {result.error}",
            )
            return AdvanceResult(True, run)

        if result.outcome == RollbackOutcome.RESTORED:
            detail = f"restored {result.restored_artifact_ref}"
        else:
            detail = f"{stage.environment} left undeployed"

        run = await self._transition(
            run,
            stage,
            StageStatus.ROLLED_BACK,
            reason=f"{stage.reason}; {detail}",
            details={"rollback_outcome": result.outcome.value},
            stage_updates={"rollback_pending": False},
        )
        result_run = await self._after_terminal_stage(
            run, run.find_stage(stage.stage_id)
        )
        return AdvanceResult(True, result_run.run)

    async def _record_success(self, run: PipelineRun, stage: StageExecution) -> None:
        now = self._clock()
        async with self._environment_locks.hold(stage.environment):
            await self.repository.set_last_known_good(
                LastKnownGood(
                    environment=stage.environment,
                    artifact_ref=run.artifact_ref,
                    artifact_digest=run.artifact_digest,
                    run_id=run.run_id,
                    recorded_at=now,
                )
            )
            await self.repository.set_environment_status(
                EnvironmentStatus(
                    environment=stage.environment,
                    artifact_ref=run.artifact_ref,
                    undeployed=False,
                    updated_at=now,
                )
            )
        logger.info(
            "Last-known-good updated",
            environment=stage.environment,
            artifact_ref=run.artifact_ref,
            run_id=run.run_id,
        )

    async def _finish_run(
        self, run: PipelineRun, status: RunStatus, reason: Optional[str]
    ) -> PipelineRun:
        if status == RunStatus.SUCCEEDED and run.had_rollback:
            status = RunStatus.ROLLED_BACK
        run = await self.state_machine.update_run(run, status=status, reason=reason)

        duration = (self._clock() - run.created_at).total_seconds()
        logger.info(
            "Run finished",
            run_id=run.run_id,
            status=status.value,
            reason=reason,
            duration_seconds=duration,
        )
        await self._safe_emit(
            PipelineEvent(
                event_type=EventType.COMPLETION,
                run_id=run.run_id,
                artifact_ref=run.artifact_ref,
                details={
                    "status": status.value,
                    "reason": reason,
                    "duration_seconds": duration,
                },
            )
        )
        return run

    async def _quarantine(
        self, run: PipelineRun, violations: Sequence[str]
    ) -> PipelineRun:
        """Freeze a corrupted run and raise a fatal alert. Never auto-resolved."""
        message = "; ".join(violations)
        logger.error(
            "Invariant violation; quarantining run",
            run_id=run.run_id,
            violations=list(violations),
        )
        run = await self.state_machine.update_run(
            run,
            status=RunStatus.QUARANTINED,
            reason=f"invariant violation: {message}",
        )
        await self._safe_emit(
            PipelineEvent(
                event_type=EventType.ALERT,
                run_id=run.run_id,
                artifact_ref=run.artifact_ref,
                details={
                    "alert": ALERT_INVARIANT_VIOLATION,
                    "severity": AlertSeverity.FATAL.value,
                    "message": message,
                },
            )
        )
        return run

    # -------------------------------------------------------------------------
    # Transitions and events
    # -------------------------------------------------------------------------

    async def _transition(
        self,
        run: PipelineRun,
        stage: StageExecution,
        to_status: StageStatus,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        stage_updates: Optional[Dict[str, Any]] = None,
    ) -> PipelineRun:
        """Transition a stage and emit a state-transition event."""
        run = await self.state_machine.transition(
            run,
            stage.stage_id,
            to_status,
            reason=reason,
            details=details,
            stage_updates=stage_updates,
        )
        await self._emit_transition(run, stage, stage.status, to_status)
        return run

    async def _emit_transition(
        self,
        run: PipelineRun,
        stage: StageExecution,
        from_status: Optional[StageStatus],
        to_status: StageStatus,
    ) -> None:
        await self._emit(
            run,
            EventType.STATE_TRANSITION,
            stage,
            {
                "stage_id": stage.stage_id,
                "from_status": from_status.value if from_status else None,
                "to_status": to_status.value,
            },
        )

    async def _alert_infrastructure(
        self, run: PipelineRun, stage: StageExecution, error: DeployerError
    ) -> None:
        if not isinstance(error, TransientInfraError):
            return
        await self._emit(
            run,
            EventType.ALERT,
            stage,
            {
                "alert": ALERT_INFRASTRUCTURE_FAILURE,
                "severity": AlertSeverity.FATAL.value,
                "message": str(error),
            },
        )

    async def _emit(
        self,
        run: PipelineRun,
        event_type: EventType,
        stage: Optional[StageExecution],
        details: Dict[str, Any],
    ) -> None:
        await self._safe_emit(
            PipelineEvent(
                event_type=event_type,
                run_id=run.run_id,
                artifact_ref=run.artifact_ref,
                stage_name=stage.stage_name if stage else None,
                environment=stage.environment if stage else None,
                details=details,
            )
        )

    async def _safe_emit(self, event: PipelineEvent) -> None:
        """Emit an event, swallowing exceptions to avoid disrupting the pipeline."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit pipeline event",
                event_type=event.event_type.value,
                run_id=event.run_id,
            )
