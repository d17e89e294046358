"""Orchestrator facade: wires store, executor, scheduler and follow-up chaining."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from types import TracebackType
from typing import Any

from scenic_jobs.config import Settings
from scenic_jobs.orchestrator.backend import AsyncSubprocessRunner, ProcessRunner
from scenic_jobs.orchestrator.dependencies import DependencyScheduler, SleepFn
from scenic_jobs.orchestrator.events import EventCallback, EventChannel, Subscription
from scenic_jobs.orchestrator.executor import JobExecutor
from scenic_jobs.orchestrator.handlers import JobHandler, JobHandlers
from scenic_jobs.orchestrator.models import Task, TaskOptions, TaskStatus, utc_now
from scenic_jobs.orchestrator.repository import TaskStore
from scenic_jobs.orchestrator.scheduler import SchedulerLoop, SchedulerRunSummary

logger = logging.getLogger(__name__)


class Orchestrator:
    """Explicitly constructed job orchestrator with a start/shutdown lifecycle.

    Usage::

        async with Orchestrator(Settings.from_env()) as orchestrator:
            orchestrator.add_task("ORGANIZE_REGION_DATA", {"region_name": "河南"})
            await orchestrator.wait_until_idle()
    """

    def __init__(  # noqa: PLR0913
        self,
        settings: Settings,
        *,
        runner: ProcessRunner | None = None,
        channel: EventChannel | None = None,
        handlers: Mapping[str, JobHandler] | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        settings.validate()
        self.settings = settings
        self.channel = channel or EventChannel()
        self.store = TaskStore(settings.db_path, channel=self.channel, clock=clock)
        self.executor = JobExecutor(
            store=self.store,
            runner=runner or AsyncSubprocessRunner(),
            handlers=JobHandlers(settings.pipeline).dispatch_table(),
        )
        for job_type, handler in (handlers or {}).items():
            self.executor.register(job_type, handler)
        self.dependencies = DependencyScheduler(
            store=self.store,
            assets_root=settings.pipeline.assets_root,
            workdir=settings.pipeline.workdir,
            stagger_seconds=settings.orchestrator.stagger_seconds,
            summary_delay_seconds=settings.orchestrator.summary_delay_seconds,
            sleep=sleep,
        )
        self.executor.add_completion_listener(self.dependencies.on_task_completed)
        self.scheduler = SchedulerLoop(
            store=self.store,
            executor=self.executor,
            max_concurrent=settings.orchestrator.max_concurrent,
            poll_interval_seconds=settings.orchestrator.poll_interval_seconds,
        )
        self._loop_task: asyncio.Task[SchedulerRunSummary] | None = None
        self._loaded = False
        self._closed = False

    # ---- lifecycle ----

    def load(self) -> int:
        """Reload persisted tasks (applies crash recovery); idempotent per instance."""

        if not self._loaded:
            self.store.load()
            self._loaded = True
        return len(self.store)

    async def start(self) -> None:
        """Load persisted tasks and start the scheduler loop."""

        if self._loop_task is not None:
            return
        self.load()
        self._loop_task = asyncio.get_running_loop().create_task(
            self.scheduler.run(),
            name="scenic-jobs-scheduler",
        )
        logger.info("Orchestrator started with %s task(s)", len(self.store))

    async def shutdown(self) -> SchedulerRunSummary:
        """Stop dispatching, let running handlers finish, then drop unfired follow-ups."""

        if self._closed:
            return self.scheduler.summary
        self.scheduler.stop()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        await self.executor.wait_all()
        await self.dependencies.shutdown()
        self.store.save()
        self.store.close()
        self._closed = True
        logger.info("Orchestrator shut down")
        return self.scheduler.summary

    async def __aenter__(self) -> Orchestrator:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def wait_until_idle(self, *, poll_seconds: float = 0.05) -> None:
        """Return once nothing is pending, running or waiting to be created."""

        if not self.running:
            raise RuntimeError("Orchestrator is not running; call start() first.")
        while True:
            await self.executor.wait_all()
            await self.dependencies.wait_idle()
            if self.scheduler.is_idle() and self.dependencies.pending_count == 0:
                return
            await asyncio.sleep(poll_seconds)

    # ---- submission & queries ----

    def add_task(
        self,
        task_type: str,
        data: Any = None,
        options: TaskOptions | Mapping[str, Any] | None = None,
    ) -> str:
        """Queue a task; validation of ``data`` happens when it is dispatched."""

        return self.store.add(task_type, data, options)

    def get_task(self, task_id: str) -> Task | None:
        return self.store.get(task_id)

    def get_all_tasks(self) -> list[Task]:
        return self.store.list_tasks()

    def get_tasks_by_status(self, status: TaskStatus | str) -> list[Task]:
        return self.store.list_by_status(status)

    def subscribe(self, callback: EventCallback) -> Subscription:
        return self.channel.subscribe(callback)

    # ---- admin ----

    def retry_task(self, task_id: str) -> bool:
        return self.store.retry(task_id)

    def clear_completed_tasks(self) -> int:
        return self.store.clear_completed()

    def clear_completed_and_failed_tasks(self) -> int:
        return self.store.clear_completed_and_failed()
