"""In-memory StateRepository.

Used by tests and by single-process deployments without a database
(state is lost on restart). Stored documents are deep-copied on the way in
and out so callers never share mutable state with the store.
"""

from datetime import datetime
from typing import Dict, List, Optional, Sequence

from release_pipeline.state.machine import AuditEntry
from release_pipeline.state.models import (
    EnvironmentLease,
    EnvironmentStatus,
    LastKnownGood,
    PipelineRun,
)
from release_pipeline.state.repository import DatabaseError


class InMemoryStateRepository:
    """Dictionary-backed implementation of the StateRepository protocol."""

    def __init__(self) -> None:
        self._runs: Dict[str, PipelineRun] = {}
        self._transitions: Dict[str, List[AuditEntry]] = {}
        self._last_known_good: Dict[str, LastKnownGood] = {}
        self._environment_status: Dict[str, EnvironmentStatus] = {}
        self._leases: Dict[str, EnvironmentLease] = {}

    async def create_run(self, run: PipelineRun) -> None:
        if run.run_id in self._runs:
            raise DatabaseError(f"Pipeline run already exists: {run.run_id}")
        self._runs[run.run_id] = run.model_copy(deep=True)
        self._transitions[run.run_id] = []

    async def get_run(self, run_id: str) -> Optional[PipelineRun]:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run is not None else None

    async def list_active_runs(self) -> List[PipelineRun]:
        active = [r for r in self._runs.values() if not r.is_terminal]
        active.sort(key=lambda r: r.created_at)
        return [r.model_copy(deep=True) for r in active]

    async def update_with_version(
        self, run: PipelineRun, transitions: Sequence[AuditEntry] = ()
    ) -> bool:
        existing = self._runs.get(run.run_id)
        if existing is None or existing.version != run.version - 1:
            return False
        self._runs[run.run_id] = run.model_copy(deep=True)
        self._transitions[run.run_id].extend(transitions)
        return True

    def transitions_for(self, run_id: str) -> List[AuditEntry]:
        """Audit trail recorded for a run, oldest first."""
        return list(self._transitions.get(run_id, []))

    async def get_last_known_good(self, environment: str) -> Optional[LastKnownGood]:
        return self._last_known_good.get(environment)

    async def set_last_known_good(self, record: LastKnownGood) -> None:
        self._last_known_good[record.environment] = record

    async def get_environment_status(
        self, environment: str
    ) -> Optional[EnvironmentStatus]:
        return self._environment_status.get(environment)

    async def set_environment_status(self, status: EnvironmentStatus) -> None:
        self._environment_status[status.environment] = status

    async def acquire_lease(
        self, environment: str, holder: str, expires_at: datetime, now: datetime
    ) -> bool:
        lease = self._leases.get(environment)
        if lease is not None and lease.holder != holder and not lease.is_expired(now):
            return False
        self._leases[environment] = EnvironmentLease(
            environment=environment, holder=holder, expires_at=expires_at
        )
        return True

    async def release_lease(self, environment: str, holder: str) -> None:
        lease = self._leases.get(environment)
        if lease is not None and lease.holder == holder:
            del self._leases[environment]

    async def get_lease(self, environment: str) -> Optional[EnvironmentLease]:
        return self._leases.get(environment)

    async def health_check(self) -> bool:
        return True
