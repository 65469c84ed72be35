"""Canary rollout controller.

Drives a weight sequence against the Deployer. One tick samples health once
and returns a decision:

- ABORT if a qualifying sample breaches the absolute error threshold, or
  the relative multiple of the pre-rollout baseline (only when the baseline
  is above zero), or when the step ran out of window extensions
- HOLD while the observation window is not yet filled
- ADVANCE once it is; advancing the final step completes the rollout

The controller never persists anything. The orchestrator persists the
returned state before and after each traffic shift.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

import structlog

from release_pipeline.clock import Clock, utcnow
from release_pipeline.deploy.base import Deployer, DeployerError, HealthMetrics
from release_pipeline.rollout.models import (
    HealthSample,
    RolloutDecision,
    RolloutState,
    StepDecision,
    validate_steps,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RolloutPolicy:
    """Thresholds for the rollout decision rule.

    Attributes:
        absolute_error_threshold: Abort above this error rate (0..1).
        relative_multiple: Abort above this multiple of the baseline.
        min_sample_size: Requests a sample needs to count.
        observation_window: Default qualifying samples per step.
        max_window_extensions: Insufficient samples tolerated per step.
        sample_window_seconds: Length of each health sample window.
    """

    absolute_error_threshold: float = 0.10
    relative_multiple: float = 5.0
    min_sample_size: int = 20
    observation_window: int = 3
    max_window_extensions: int = 10
    sample_window_seconds: float = 10.0

    def __post_init__(self) -> None:
        if not 0.0 < self.absolute_error_threshold <= 1.0:
            raise ValueError("absolute_error_threshold must be within (0, 1]")
        if self.relative_multiple <= 1.0:
            raise ValueError("relative_multiple must be greater than 1")
        if self.min_sample_size < 1:
            raise ValueError("min_sample_size must be at least 1")
        if self.observation_window < 1:
            raise ValueError("observation_window must be at least 1")
        if self.max_window_extensions < 0:
            raise ValueError("max_window_extensions cannot be negative")


@dataclass(frozen=True)
class TickResult:
    decision: RolloutDecision
    state: RolloutState
    reason: str


class RolloutController:
    """Applies canary steps and decides when to advance or abort.

    Attributes:
        deployer: Deploy capability used for shifts and health samples.
        policy: Decision thresholds.
    """

    def __init__(
        self,
        deployer: Deployer,
        policy: Optional[RolloutPolicy] = None,
        clock: Clock = utcnow,
    ):
        self.deployer = deployer
        self.policy = policy or RolloutPolicy()
        self._clock = clock

    async def start_rollout(
        self,
        stage_id: str,
        environment: str,
        artifact_ref: str,
        steps: List[int],
        observation_window: Optional[int] = None,
    ) -> RolloutState:
        """Create the rollout state and record the baseline error rate.

        No traffic is shifted here; call apply_current_step() once the
        returned state has been persisted.

        Raises:
            ValueError: If the steps are malformed.
            DeployerError: If the baseline could not be sampled.
        """
        validate_steps(steps)

        baseline = await self.deployer.get_health_metrics(
            environment, self.policy.sample_window_seconds
        )
        # A baseline from too few requests would make the relative check noise
        baseline_rate = (
            baseline.error_rate
            if baseline.sample_count >= self.policy.min_sample_size
            else None
        )

        logger.info(
            "Rollout started",
            stage_id=stage_id,
            environment=environment,
            steps=steps,
            baseline_error_rate=baseline_rate,
        )

        return RolloutState(
            stage_id=stage_id,
            environment=environment,
            artifact_ref=artifact_ref,
            steps=list(steps),
            baseline_error_rate=baseline_rate,
            observation_window=observation_window or self.policy.observation_window,
        )

    async def apply_current_step(self, state: RolloutState) -> RolloutState:
        """Shift traffic to the current step's weight.

        Safe to repeat: the deployer is idempotent for identical calls.
        """
        await self.deployer.set_traffic_weight(
            state.environment, state.artifact_ref, state.current_weight
        )
        logger.info(
            "Traffic shifted",
            stage_id=state.stage_id,
            environment=state.environment,
            weight=state.current_weight,
            step_index=state.current_step_index,
        )
        return state.model_copy(update={"weight_applied": True})

    def decide(
        self, state: RolloutState, sample: HealthMetrics
    ) -> Tuple[RolloutDecision, str]:
        """Pure decision rule for one sample in the current step."""
        policy = self.policy

        if sample.sample_count < policy.min_sample_size:
            if state.insufficient_samples + 1 > policy.max_window_extensions:
                return (
                    RolloutDecision.ABORT,
                    f"insufficient traffic: fewer than {policy.min_sample_size} "
                    f"requests in {policy.max_window_extensions + 1} windows",
                )
            return (
                RolloutDecision.HOLD,
                f"sample of {sample.sample_count} requests below minimum "
                f"{policy.min_sample_size}; window extended",
            )

        if sample.error_rate > policy.absolute_error_threshold:
            return (
                RolloutDecision.ABORT,
                f"error rate {sample.error_rate:.2%} exceeds absolute threshold "
                f"{policy.absolute_error_threshold:.2%}",
            )

        baseline = state.baseline_error_rate
        if baseline and sample.error_rate > policy.relative_multiple * baseline:
            return (
                RolloutDecision.ABORT,
                f"error rate {sample.error_rate:.2%} exceeds "
                f"{policy.relative_multiple:g}x baseline {baseline:.2%}",
            )

        if state.qualifying_samples + 1 < state.observation_window:
            return (
                RolloutDecision.HOLD,
                f"{state.qualifying_samples + 1}/{state.observation_window} "
                "qualifying samples",
            )

        return RolloutDecision.ADVANCE, "observation window healthy"

    async def tick(self, state: RolloutState) -> TickResult:
        """Sample health once and apply the decision to the state.

        A failed health query counts as an insufficient sample, so an
        unobservable rollout runs out of extensions and aborts.
        """
        if state.is_finished:
            raise ValueError(f"rollout for {state.stage_id} is already finished")
        if not state.weight_applied:
            raise ValueError(
                f"weight for step {state.current_step_index} not applied yet"
            )

        now = self._clock()
        try:
            metrics = await self.deployer.get_health_metrics(
                state.environment, self.policy.sample_window_seconds
            )
        except DeployerError as e:
            logger.warning(
                "Health sample failed",
                stage_id=state.stage_id,
                environment=state.environment,
                error=str(e),
            )
            metrics = HealthMetrics(error_rate=0.0, sample_count=0)

        decision, reason = self.decide(state, metrics)
        qualifying = metrics.sample_count >= self.policy.min_sample_size

        sample = HealthSample(
            step_index=state.current_step_index,
            error_rate=metrics.error_rate,
            latency_ms=metrics.latency_ms,
            sample_count=metrics.sample_count,
            qualifying=qualifying,
            sampled_at=now,
        )
        entry = StepDecision(
            step_index=state.current_step_index,
            weight=state.current_weight,
            decision=decision,
            reason=reason,
            decided_at=now,
        )

        update = {
            "samples": state.samples + [sample],
            "decisions": state.decisions + [entry],
        }
        if decision == RolloutDecision.HOLD:
            if qualifying:
                update["qualifying_samples"] = state.qualifying_samples + 1
            else:
                update["insufficient_samples"] = state.insufficient_samples + 1
        elif decision == RolloutDecision.ADVANCE:
            if state.is_final_step:
                update["completed"] = True
            else:
                update.update(
                    current_step_index=state.current_step_index + 1,
                    weight_applied=False,
                    qualifying_samples=0,
                    insufficient_samples=0,
                )
        # ABORT leaves ``aborted`` unset until abort() has pulled the traffic

        logger.info(
            "Rollout tick",
            stage_id=state.stage_id,
            weight=state.current_weight,
            decision=decision.value,
            reason=reason,
            error_rate=metrics.error_rate,
            sample_count=metrics.sample_count,
        )
        return TickResult(
            decision=decision, state=state.model_copy(update=update), reason=reason
        )

    async def abort(self, state: RolloutState, reason: str) -> RolloutState:
        """Pull all traffic from the artifact in one step.

        Raises:
            DeployerError: If the weight could not be set to 0.
        """
        await self.deployer.set_traffic_weight(state.environment, state.artifact_ref, 0)
        logger.warning(
            "Rollout aborted; traffic reverted to 0",
            stage_id=state.stage_id,
            environment=state.environment,
            reason=reason,
        )
        return state.model_copy(update={"aborted": True, "weight_applied": False})
