"""Shared fixtures: fake collaborators and a wired orchestrator harness."""

import itertools
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Set, Tuple

import pytest

from release_pipeline.approval.coordinator import ApprovalCoordinator
from release_pipeline.definition import PipelineDefinition, StageConfig
from release_pipeline.deploy.base import Deployer, HealthMetrics, TransientInfraError
from release_pipeline.deploy.retry import RetryPolicy
from release_pipeline.events.emitter import EventEmitter
from release_pipeline.events.models import EventType, PipelineEvent
from release_pipeline.gates.evaluator import GateEvaluator
from release_pipeline.gates.models import Finding
from release_pipeline.locks import EnvironmentLeaseManager
from release_pipeline.orchestrator import PipelineOrchestrator
from release_pipeline.rollback.manager import RollbackManager
from release_pipeline.rollout.controller import RolloutController, RolloutPolicy
from release_pipeline.sources.artifacts import StaticArtifactResolver
from release_pipeline.state.machine import PipelineStateMachine
from release_pipeline.state.memory import InMemoryStateRepository

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
HEALTHY = HealthMetrics(error_rate=0.01, latency_ms=40.0, sample_count=100)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FixedClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeDeployer(Deployer):
    """Records traffic shifts and serves scripted health samples."""

    def __init__(self, default_health: HealthMetrics = HEALTHY):
        self.calls: List[Tuple[str, str, int]] = []
        self.default_health = default_health
        self.health: Dict[str, List[HealthMetrics]] = {}
        self.weight_failures = 0
        self.fail_refs: Set[str] = set()
        self.crash_next_shift = False

    def script_health(self, environment: str, *samples: HealthMetrics) -> None:
        self.health.setdefault(environment, []).extend(samples)

    def weights(self, environment: str) -> List[Tuple[str, int]]:
        return [(ref, weight) for env, ref, weight in self.calls if env == environment]

    async def set_traffic_weight(
        self, environment: str, artifact_ref: str, weight: int
    ) -> None:
        if self.crash_next_shift:
            self.crash_next_shift = False
            raise RuntimeError("process killed")
        if self.weight_failures > 0:
            self.weight_failures -= 1
            raise TransientInfraError("cluster API timeout", environment=environment)
        if artifact_ref in self.fail_refs:
            raise TransientInfraError("cluster API timeout", environment=environment)
        self.calls.append((environment, artifact_ref, weight))

    async def get_health_metrics(
        self, environment: str, window_seconds: float
    ) -> HealthMetrics:
        queue = self.health.get(environment)
        if queue:
            return queue.pop(0)
        return self.default_health


class StaticScanner:
    """Scanner returning fixed findings; None means no report."""

    def __init__(self, findings: Optional[Sequence[Finding]] = (), name: str = "static"):
        self.name = name
        self.findings = None if findings is None else list(findings)

    async def get_findings(self, artifact_ref: str) -> Optional[List[Finding]]:
        return None if self.findings is None else list(self.findings)


class RecordingEmitter(EventEmitter):
    def __init__(self) -> None:
        self.events: List[PipelineEvent] = []

    async def emit(self, event: PipelineEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> List[PipelineEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def alerts(self, name: str) -> List[PipelineEvent]:
        return [e for e in self.of_type(EventType.ALERT) if e.details.get("alert") == name]


async def _no_sleep(delay: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Harness
# ---------------------------------------------------------------------------


@dataclass
class Harness:
    orchestrator: PipelineOrchestrator
    repository: InMemoryStateRepository
    deployer: FakeDeployer
    scanner: StaticScanner
    events: RecordingEmitter
    clock: FixedClock

    async def drive(self, run_id: str, max_steps: int = 50):
        """Advance until a run is terminal or an advance leaves it unchanged."""
        run = await self.orchestrator.status(run_id)
        for _ in range(max_steps):
            version = run.version
            run = (await self.orchestrator.advance(run_id)).run
            if run.is_terminal or run.version == version:
                break
        return run


def single_stage(**overrides) -> PipelineDefinition:
    fields = {"name": "production", "environment": "production"}
    fields.update(overrides)
    return PipelineDefinition(stages=[StageConfig(**fields)])


def build_harness(
    definition: PipelineDefinition,
    repository: Optional[InMemoryStateRepository] = None,
    deployer: Optional[FakeDeployer] = None,
    scanner: Optional[StaticScanner] = None,
    clock: Optional[FixedClock] = None,
    rollout_policy: Optional[RolloutPolicy] = None,
) -> Harness:
    repository = repository or InMemoryStateRepository()
    deployer = deployer or FakeDeployer()
    scanner = scanner or StaticScanner()
    clock = clock or FixedClock()
    events = RecordingEmitter()
    counter = itertools.count(1)

    orchestrator = PipelineOrchestrator(
        state_machine=PipelineStateMachine(repository, clock=clock),
        definition=definition,
        artifact_resolver=StaticArtifactResolver(),
        scanners=[scanner],
        gate_evaluator=GateEvaluator(
            {s.name: s.gate_policy for s in definition.stages}, clock=clock
        ),
        approval_coordinator=ApprovalCoordinator(events, clock=clock),
        rollout_controller=RolloutController(
            deployer, policy=rollout_policy, clock=clock
        ),
        rollback_manager=RollbackManager(
            repository,
            deployer,
            events,
            retry_policy=RetryPolicy(max_attempts=3, base_delay=0, jitter=False),
            sleep=_no_sleep,
            clock=clock,
        ),
        lease_manager=EnvironmentLeaseManager(repository, ttl_seconds=120, clock=clock),
        event_emitter=events,
        gate_timeout_seconds=600,
        clock=clock,
        run_id_factory=lambda: f"run-{next(counter)}",
    )
    return Harness(orchestrator, repository, deployer, scanner, events, clock)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def deployer() -> FakeDeployer:
    return FakeDeployer()


@pytest.fixture
def repository() -> InMemoryStateRepository:
    return InMemoryStateRepository()


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()
