"""Deployer capability shared by every deployment tool adapter.

The orchestrator, rollout controller and rollback manager only ever talk to
a Deployer. Tool-specific adapters (HTTP control plane, Helm, Kustomize)
implement the two primitives:

- set_traffic_weight(environment, artifact_ref, weight)
- get_health_metrics(environment, window_seconds)

Both must be idempotent for identical parameters: a restarted orchestrator
re-issues the last un-acknowledged traffic shift.
"""

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, Field


class DeployerError(Exception):
    """Raised when a deploy primitive fails.

    Attributes:
        message: Human-readable error description.
        environment: Target environment of the failed call.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        environment: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.environment = environment
        self.original_error = original_error
        super().__init__(message)


class TransientInfraError(DeployerError):
    """A cluster or metrics call failed in a way that may succeed on retry.

    Adapters raise this only after exhausting their own retry budget.
    """


class HealthMetrics(BaseModel):
    """Health of an environment over one observation window.

    Attributes:
        error_rate: failed / total requests within the window (0..1).
        latency_ms: Representative request latency within the window.
        sample_count: Total requests observed within the window.
    """

    error_rate: float = Field(..., ge=0.0, le=1.0)
    latency_ms: float = Field(default=0.0, ge=0.0)
    sample_count: int = Field(..., ge=0)

    @classmethod
    def from_counts(
        cls, failed: float, total: float, latency_ms: float = 0.0
    ) -> "HealthMetrics":
        """Build a window sample from request counts."""
        if total <= 0:
            return cls(error_rate=0.0, latency_ms=latency_ms, sample_count=0)
        rate = min(1.0, max(0.0, failed / total))
        return cls(error_rate=rate, latency_ms=latency_ms, sample_count=int(total))


class Deployer(ABC):
    """Polymorphic deploy capability."""

    @abstractmethod
    async def set_traffic_weight(
        self, environment: str, artifact_ref: str, weight: int
    ) -> None:
        """Route ``weight`` percent of the environment's traffic to an artifact.

        Weight 100 is a full deploy; weight 0 removes the artifact from
        rotation.

        Raises:
            DeployerError: On a permanent failure.
            TransientInfraError: When retries were exhausted.
        """

    @abstractmethod
    async def get_health_metrics(
        self, environment: str, window_seconds: float
    ) -> HealthMetrics:
        """Sample environment health over the trailing window."""

    async def close(self) -> None:
        """Release resources. The default implementation does nothing."""


def validate_weight(weight: int) -> int:
    if not 0 <= weight <= 100:
        raise ValueError(f"traffic weight must be between 0 and 100, got {weight}")
    return weight
