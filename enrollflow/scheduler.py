"""Polling scheduler for due executions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from .config import SchedulerConfig
from .contracts import WorkflowExecution, utc_now
from .persistence import WorkflowRepository
from .runner import ExecutionStepRunner

logger = logging.getLogger(__name__)


@dataclass
class TickSummary:
    """Outcome counts of one scheduler tick."""

    released: int = 0
    processed: int = 0
    completed: int = 0
    waiting: int = 0
    stopped: int = 0
    failed: int = 0
    superseded: int = 0
    errors: int = 0

    def record(self, outcome: Optional[str]) -> None:
        if outcome is None:
            return
        self.processed += 1
        if outcome == "error":
            self.errors += 1
        elif outcome in ("completed", "waiting", "stopped", "failed", "superseded"):
            setattr(self, outcome, getattr(self, outcome) + 1)

    def as_dict(self) -> dict:
        return asdict(self)


class Scheduler:
    """Claim due executions and hand them to the step runner."""

    def __init__(
        self,
        repository: WorkflowRepository,
        runner: ExecutionStepRunner,
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self._repository = repository
        self._runner = runner
        self.config = config or SchedulerConfig()

    async def run_once(self, now: Optional[datetime] = None) -> TickSummary:
        """Process every execution due at ``now``."""
        now = now or utc_now()
        summary = TickSummary()
        summary.released = await self._repository.release_stale_claims(
            now - timedelta(seconds=self.config.claim_timeout_seconds)
        )
        if summary.released:
            logger.warning(f"Released {summary.released} stale execution claims")

        due = await self._repository.list_due_executions(now, self.config.batch_size)
        semaphore = asyncio.Semaphore(self.config.worker_count)

        async def handle(execution: WorkflowExecution) -> Optional[str]:
            async with semaphore:
                claimed = await self._repository.claim_execution(execution.id, utc_now())
                if claimed is None:
                    logger.debug(f"Execution {execution.id} already claimed")
                    return None
                try:
                    return await self._runner.run(claimed)
                except Exception:
                    # One poisoned execution must not halt the tick.
                    logger.exception(f"Unhandled error processing execution {execution.id}")
                    return "error"

        for outcome in await asyncio.gather(*(handle(e) for e in due)):
            summary.record(outcome)

        if summary.processed:
            logger.info(f"Scheduler tick: {summary.as_dict()}")
        return summary

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Poll on the configured interval.

        Args:
            lifespan: Maximum time in seconds to keep polling. If None, runs indefinitely.
        """
        loop = asyncio.get_event_loop()
        start_time = loop.time() if lifespan else None
        logger.info(
            f"Scheduler started (interval={self.config.poll_interval_seconds}s, "
            f"workers={self.config.worker_count})"
        )
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Scheduler tick failed")

            delay = self.config.poll_interval_seconds
            if lifespan and start_time is not None:
                remaining = lifespan - (loop.time() - start_time)
                if remaining <= 0:
                    break
                delay = min(delay, remaining)
            await asyncio.sleep(delay)
