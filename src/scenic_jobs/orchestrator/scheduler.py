"""Periodic bounded-concurrency dispatcher."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from scenic_jobs.orchestrator.executor import JobExecutor
from scenic_jobs.orchestrator.models import TaskStatus
from scenic_jobs.orchestrator.repository import TaskStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SchedulerRunSummary:
    """Aggregate loop counters for CLI reporting."""

    ticks: int = 0
    dispatched: int = 0
    idle_ticks: int = 0
    tick_errors: int = 0


class SchedulerLoop:
    """Single cooperative loop that promotes pending tasks into free slots.

    Each tick dispatches, oldest first, as many pending tasks as there are
    free slots.  Tasks added while a tick is in progress wait for a later
    tick; no ordering is promised between them.
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        executor: JobExecutor,
        max_concurrent: int = 3,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be positive")
        self.store = store
        self.executor = executor
        self.max_concurrent = max_concurrent
        self.poll_interval_seconds = poll_interval_seconds
        self.summary = SchedulerRunSummary()
        self._stop_requested = asyncio.Event()

    @property
    def free_slots(self) -> int:
        return max(0, self.max_concurrent - self.executor.in_flight_count)

    def tick(self) -> list[str]:
        """Dispatch up to ``free_slots`` pending tasks; returns the dispatched ids."""

        self.summary.ticks += 1
        free = self.free_slots
        if free == 0:
            return []

        pending = self.store.list_by_status(TaskStatus.PENDING)
        if not pending:
            self.summary.idle_ticks += 1
            return []

        dispatched: list[str] = []
        for task in pending[:free]:
            if self.executor.start(task.id) is not None:
                dispatched.append(task.id)
        if dispatched:
            self.summary.dispatched += len(dispatched)
            logger.debug(
                "Tick dispatched %s task(s); in flight %s/%s",
                len(dispatched),
                self.executor.in_flight_count,
                self.max_concurrent,
            )
        return dispatched

    async def run(self) -> SchedulerRunSummary:
        """Tick every ``poll_interval_seconds`` until :meth:`stop` is called."""

        logger.info(
            "Scheduler started (max_concurrent=%s, interval=%.2fs)",
            self.max_concurrent,
            self.poll_interval_seconds,
        )
        while not self._stop_requested.is_set():
            self._safe_tick()
            try:
                await asyncio.wait_for(
                    self._stop_requested.wait(),
                    timeout=self.poll_interval_seconds,
                )
            except TimeoutError:
                continue
        logger.info(
            "Scheduler stopped after %s tick(s), %s dispatched",
            self.summary.ticks,
            self.summary.dispatched,
        )
        return self.summary

    def stop(self) -> None:
        self._stop_requested.set()

    def is_idle(self) -> bool:
        return (
            self.executor.in_flight_count == 0
            and self.store.count_by_status(TaskStatus.PENDING) == 0
        )

    def _safe_tick(self) -> None:
        try:
            self.tick()
        except Exception:
            self.summary.tick_errors += 1
            logger.exception("Scheduler tick failed")
