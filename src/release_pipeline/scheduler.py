"""Poll-driven reconciliation of active runs.

Each cycle lists the runs that have not finished and advances them
concurrently. A failure while advancing one run is logged and does not stop
the others; the run is simply retried on the next cycle.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog

from release_pipeline.orchestrator import AdvanceResult, PipelineOrchestrator

logger = structlog.get_logger(__name__)


@dataclass
class CycleReport:
    """What one reconcile cycle did.

    Attributes:
        advanced: Run IDs that made progress.
        idle: Run IDs that were waiting.
        failed: Run ID to error message for runs whose advance raised.
    """

    advanced: List[str] = field(default_factory=list)
    idle: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.advanced) + len(self.idle) + len(self.failed)


class ReconcileLoop:
    """Advances every active run at a fixed interval.

    Attributes:
        orchestrator: The orchestrator whose runs are reconciled.
        poll_interval: Seconds between the start of consecutive cycles.
    """

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        poll_interval: float = 10,
    ):
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self.orchestrator = orchestrator
        self.poll_interval = poll_interval
        self._stop = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Ask the loop to exit after the current cycle."""
        self._stop.set()

    async def run_once(self) -> CycleReport:
        """Run a single reconcile cycle."""
        report = CycleReport()
        try:
            runs = await self.orchestrator.list_active()
        except Exception:
            logger.exception("Failed to list active runs")
            return report

        run_ids = [run.run_id for run in runs]
        results = await asyncio.gather(
            *(self.orchestrator.advance(run_id) for run_id in run_ids),
            return_exceptions=True,
        )

        for run_id, result in zip(run_ids, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error(
                    "Failed to advance run",
                    run_id=run_id,
                    error=str(result),
                    error_type=type(result).__name__,
                )
                report.failed[run_id] = str(result)
            elif isinstance(result, AdvanceResult) and result.progressed:
                report.advanced.append(run_id)
            else:
                report.idle.append(run_id)

        if report.total:
            logger.debug(
                "Reconcile cycle complete",
                advanced=len(report.advanced),
                idle=len(report.idle),
                failed=len(report.failed),
            )
        return report

    async def run_forever(self, max_cycles: Optional[int] = None) -> None:
        """Reconcile until stop() is called.

        Args:
            max_cycles: Stop after this many cycles, if given.
        """
        logger.info("Reconcile loop started", poll_interval=self.poll_interval)
        cycles = 0
        while not self._stop.is_set():
            await self.run_once()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Reconcile loop stopped", cycles=cycles)
