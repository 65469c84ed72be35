"""Mutual exclusion for runs and environments.

KeyedLocks serializes work on one key inside this process (one run's
advance, one environment's last-known-good write). EnvironmentLeaseManager
serializes deploys to one environment across processes through the
persisted lease.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, Optional

import structlog

from release_pipeline.clock import Clock, utcnow
from release_pipeline.state.machine import StateRepository
from release_pipeline.state.models import EnvironmentLease

logger = structlog.get_logger(__name__)


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class EnvironmentLeaseManager:
    """Per-environment deploy lease with a TTL.

    The holder renews the lease on every advance. An expired lease is only
    handed to another run once its holder no longer has traffic in the
    environment: a run that is still deploying, canarying, pulling traffic or
    rolling back keeps the environment however slowly it is advanced.
    """

    def __init__(
        self,
        repository: StateRepository,
        ttl_seconds: float = 600,
        clock: Clock = utcnow,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.repository = repository
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    async def acquire(self, environment: str, holder: str) -> bool:
        """Take or renew the lease. Returns False if another holder has it."""
        now = self._clock()
        lease = await self.repository.get_lease(environment)
        if await self._held_by_other(lease, holder, now):
            return False

        acquired = await self.repository.acquire_lease(
            environment,
            holder,
            now + timedelta(seconds=self.ttl_seconds),
            now,
        )
        if not acquired:
            lease = await self.repository.get_lease(environment)
            logger.info(
                "Environment lease busy",
                environment=environment,
                requested_by=holder,
                held_by=lease.holder if lease else None,
            )
        return acquired

    async def release(self, environment: str, holder: str) -> None:
        await self.repository.release_lease(environment, holder)
        logger.debug("Environment lease released", environment=environment, holder=holder)

    async def holder(self, environment: str) -> Optional[str]:
        lease = await self.repository.get_lease(environment)
        if lease is None or lease.is_expired(self._clock()):
            return None
        return lease.holder

    async def _held_by_other(
        self, lease: Optional[EnvironmentLease], holder: str, now: datetime
    ) -> bool:
        if lease is None or lease.holder == holder or not lease.is_expired(now):
            return False

        run = await self.repository.get_run(lease.holder)
        if run is None or run.is_terminal:
            return False
        stage = run.current_stage
        if stage is None or stage.environment != lease.environment:
            return False
        if not stage.traffic_shifted:
            return False

        logger.warning(
            "Expired lease holder still has traffic in the environment; "
            "not taking over",
            environment=lease.environment,
            requested_by=holder,
            held_by=lease.holder,
            stage_status=stage.status.value,
        )
        return True
