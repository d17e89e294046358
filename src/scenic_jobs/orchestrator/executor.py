"""Job executor: runs one dispatched task to completion or failure."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping

from scenic_jobs.orchestrator.backend.base import ProcessRunner
from scenic_jobs.orchestrator.errors import ValidationError
from scenic_jobs.orchestrator.handlers import HandlerContext, JobHandler
from scenic_jobs.orchestrator.models import LogLevel, Task, TaskStatus
from scenic_jobs.orchestrator.repository import TaskStore

logger = logging.getLogger(__name__)

CompletionListener = Callable[[Task], None]


class JobExecutor:
    """Dispatch table of job-type handlers plus the status bookkeeping around them."""

    def __init__(
        self,
        *,
        store: TaskStore,
        runner: ProcessRunner,
        handlers: dict[str, JobHandler] | None = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self._handlers: dict[str, JobHandler] = dict(handlers or {})
        self._completion_listeners: list[CompletionListener] = []
        self._in_flight: dict[str, asyncio.Task[None]] = {}

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def in_flight_ids(self) -> list[str]:
        return list(self._in_flight)

    def register(self, job_type: str, handler: JobHandler) -> None:
        """Add or replace the handler for ``job_type``."""

        self._handlers[str(job_type)] = handler

    def registered_types(self) -> list[str]:
        return sorted(self._handlers)

    def add_completion_listener(self, listener: CompletionListener) -> None:
        """Call ``listener`` with the task snapshot after each successful completion."""

        self._completion_listeners.append(listener)

    def start(self, task_id: str) -> asyncio.Task[None] | None:
        """Mark ``task_id`` running and schedule its handler on the running loop.

        Returns ``None`` when the task is already in flight or is no longer
        pending.
        """

        if task_id in self._in_flight:
            return None
        task = self.store.get(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            return None

        self.store.update(task_id, status=TaskStatus.RUNNING, progress=0)
        self.store.append_log(task_id, f"Starting task: {task.type}")

        loop = asyncio.get_running_loop()
        handle = loop.create_task(self.execute(task_id), name=f"job-{task.type}-{task_id}")
        self._in_flight[task_id] = handle
        return handle

    async def wait_all(self) -> None:
        """Wait for every in-flight handler to settle."""

        while self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)

    async def execute(self, task_id: str) -> None:
        """Run the handler for an already-running task; never raises handler errors."""

        try:
            task = self.store.get(task_id)
            if task is None:
                logger.warning("Task %s disappeared before execution", task_id)
                return
            try:
                handler = self._handlers.get(task.type)
                if handler is None:
                    raise ValidationError(f"Unknown task type: {task.type}")
                if not isinstance(task.data, Mapping):
                    raise ValidationError(
                        f"{task.type} data must be a JSON object, got {type(task.data).__name__}"
                    )
                context = HandlerContext(
                    task_id=task_id,
                    job_type=task.type,
                    data=dict(task.data),
                    store=self.store,
                    runner=self.runner,
                )
                result = await handler(context)
            except Exception as error:
                self._mark_failed(task_id, error)
                return
            self._mark_completed(task_id, result)
        finally:
            self._in_flight.pop(task_id, None)

    def _mark_completed(self, task_id: str, result: dict | None) -> None:
        self.store.update(
            task_id,
            status=TaskStatus.COMPLETED,
            progress=100,
            result=result if result is not None else {},
        )
        self.store.append_log(task_id, "Task completed successfully", LogLevel.SUCCESS)
        logger.info("Task %s completed", task_id)

        completed = self.store.get(task_id)
        if completed is None:
            return
        for listener in list(self._completion_listeners):
            try:
                listener(completed)
            except Exception:
                logger.exception("Completion listener failed for task %s", task_id)

    def _mark_failed(self, task_id: str, error: Exception) -> None:
        message = str(error) or error.__class__.__name__
        self.store.update(task_id, status=TaskStatus.FAILED, error=message)
        self.store.append_log(task_id, f"Task failed: {message}", LogLevel.ERROR)
        logger.error("Task %s failed (%s): %s", task_id, error.__class__.__name__, message)
