"""Rollback manager.

Restores an environment to its last-known-good artifact by redeploying it
at 100% through the same Deployer.set_traffic_weight() used for forward
rollouts. The redeploy is retried with bounded exponential backoff; running
out of attempts raises a fatal operational alert. An environment that never
had a successful rollout is marked undeployed and a distinct alert raised.

Retries nest. Each redeploy is one set_traffic_weight() call, and the
adapter retries transient failures inside that call with its own policy, so
a rollback issues at most rollback attempts x adapter attempts requests to
the cluster. Permanent adapter errors cost one request per rollback attempt.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from release_pipeline.clock import Clock, utcnow
from release_pipeline.deploy.base import Deployer, DeployerError
from release_pipeline.deploy.retry import RetryPolicy
from release_pipeline.events.emitter import EventEmitter
from release_pipeline.events.models import AlertSeverity, EventType, PipelineEvent
from release_pipeline.rollback.models import RollbackOutcome, RollbackResult
from release_pipeline.state.machine import StateRepository
from release_pipeline.state.models import EnvironmentStatus

logger = structlog.get_logger(__name__)

ALERT_ENVIRONMENT_UNDEPLOYED = "environment_undeployed"
ALERT_ROLLBACK_FAILED = "rollback_failed"


class RollbackManager:
    """Reverts environments to their last-known-good artifact.

    Attributes:
        repository: Source of last-known-good; sink for environment status.
        deployer: Deploy capability shared with forward rollouts.
        event_emitter: Sink for rollback events and alerts.
        retry_policy: Redeploy retry budget.
    """

    def __init__(
        self,
        repository: StateRepository,
        deployer: Deployer,
        event_emitter: EventEmitter,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Clock = utcnow,
    ):
        self.repository = repository
        self.deployer = deployer
        self.event_emitter = event_emitter
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock

    async def rollback(
        self,
        environment: str,
        *,
        run_id: str,
        failed_artifact_ref: str,
        stage_name: Optional[str] = None,
    ) -> RollbackResult:
        """Restore the environment's last-known-good artifact.

        Never raises for deploy failures; the outcome is reported in the
        result and through events.

        Args:
            environment: Environment to restore.
            run_id: Run whose failure triggered the rollback.
            failed_artifact_ref: Artifact being rolled back.
            stage_name: Stage that failed, for events.
        """
        lkg = await self.repository.get_last_known_good(environment)

        if lkg is None:
            logger.error(
                "No last-known-good artifact; marking environment undeployed",
                environment=environment,
                run_id=run_id,
            )
            await self.repository.set_environment_status(
                EnvironmentStatus(
                    environment=environment,
                    artifact_ref=None,
                    undeployed=True,
                    updated_at=self._clock(),
                )
            )
            result = RollbackResult(
                environment=environment, outcome=RollbackOutcome.UNDEPLOYED
            )
            await self._emit_rollback(result, run_id, failed_artifact_ref, stage_name)
            await self._emit_alert(
                ALERT_ENVIRONMENT_UNDEPLOYED,
                AlertSeverity.WARNING,
                f"{environment} has no last-known-good artifact and is undeployed",
                environment,
                run_id,
                failed_artifact_ref,
                stage_name,
            )
            return result

        last_error: Optional[DeployerError] = None
        attempts = 0
        for attempt in range(self.retry_policy.max_attempts):
            attempts = attempt + 1
            try:
                await self.deployer.set_traffic_weight(environment, lkg.artifact_ref, 100)
            except DeployerError as e:
                last_error = e
                logger.warning(
                    "Rollback redeploy failed",
                    environment=environment,
                    artifact_ref=lkg.artifact_ref,
                    attempt=attempts,
                    max_attempts=self.retry_policy.max_attempts,
                    error=str(e),
                )
                if attempts < self.retry_policy.max_attempts:
                    await self._sleep(self.retry_policy.backoff(attempt))
                continue

            await self.repository.set_environment_status(
                EnvironmentStatus(
                    environment=environment,
                    artifact_ref=lkg.artifact_ref,
                    undeployed=False,
                    updated_at=self._clock(),
                )
            )
            logger.info(
                "Environment restored to last-known-good",
                environment=environment,
                artifact_ref=lkg.artifact_ref,
                attempts=attempts,
            )
            result = RollbackResult(
                environment=environment,
                outcome=RollbackOutcome.RESTORED,
                restored_artifact_ref=lkg.artifact_ref,
                attempts=attempts,
            )
            await self._emit_rollback(result, run_id, failed_artifact_ref, stage_name)
            return result

        message = (
            f"rollback of {environment} to {lkg.artifact_ref} failed after "
            f"{attempts} attempts: {last_error}"
        )
        logger.error(
            "Rollback failed; manual intervention required",
            environment=environment,
            artifact_ref=lkg.artifact_ref,
            attempts=attempts,
        )
        result = RollbackResult(
            environment=environment,
            outcome=RollbackOutcome.FAILED,
            restored_artifact_ref=None,
            attempts=attempts,
            error=str(last_error),
        )
        await self._emit_rollback(result, run_id, failed_artifact_ref, stage_name)
        await self._emit_alert(
            ALERT_ROLLBACK_FAILED,
            AlertSeverity.FATAL,
            message,
            environment,
            run_id,
            failed_artifact_ref,
            stage_name,
        )
        return result

    async def _emit_rollback(
        self,
        result: RollbackResult,
        run_id: str,
        artifact_ref: str,
        stage_name: Optional[str],
    ) -> None:
        await self._safe_emit(
            PipelineEvent(
                event_type=EventType.ROLLBACK,
                run_id=run_id,
                artifact_ref=artifact_ref,
                stage_name=stage_name,
                environment=result.environment,
                details={
                    "outcome": result.outcome.value,
                    "restored_artifact_ref": result.restored_artifact_ref,
                    "attempts": result.attempts,
                },
            )
        )

    async def _emit_alert(
        self,
        alert: str,
        severity: AlertSeverity,
        message: str,
        environment: str,
        run_id: str,
        artifact_ref: str,
        stage_name: Optional[str],
    ) -> None:
        await self._safe_emit(
            PipelineEvent(
                event_type=EventType.ALERT,
                run_id=run_id,
                artifact_ref=artifact_ref,
                stage_name=stage_name,
                environment=environment,
                details={
                    "alert": alert,
                    "severity": severity.value,
                    "message": message,
                },
            )
        )

    async def _safe_emit(self, event: PipelineEvent) -> None:
        try:
            await self.event_emitter.emit(event)
        except Exception as e:
            logger.warning(
                "Failed to emit rollback event",
                event_type=event.event_type.value,
                error=str(e),
            )
