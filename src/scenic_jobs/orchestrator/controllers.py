"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path

from scenic_jobs.config import Settings
from scenic_jobs.orchestrator.backend import ProcessRunner
from scenic_jobs.orchestrator.events import TaskEvent, TaskEventKind
from scenic_jobs.orchestrator.models import JobType, Task, TaskOptions, TaskStatus
from scenic_jobs.orchestrator.repository import TaskStore
from scenic_jobs.orchestrator.services import Orchestrator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AddTaskCommand:
    """CLI input for task submission."""

    db_path: Path | None
    task_type: str
    data_json: str
    description: str | None = None
    depends_on: str | None = None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str
    log_limit: int = 50


@dataclass(slots=True)
class RetryTaskCommand:
    """CLI input for retrying a failed task."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class ClearTasksCommand:
    """CLI input for removing finished tasks."""

    db_path: Path | None
    include_failed: bool


@dataclass(slots=True)
class RunCommand:
    """CLI input for running the scheduler loop."""

    db_path: Path | None
    until_idle: bool
    max_concurrent: int | None = None
    follow_logs: bool = False


@dataclass(slots=True)
class RunResult:
    """Lines to print plus whether any task ended up failed."""

    lines: list[str]
    success: bool


class OrchestratorCliController:
    """Translate CLI commands into store / orchestrator calls and output lines."""

    def __init__(self, *, runner: ProcessRunner | None = None) -> None:
        self.runner = runner

    def add_task(self, command: AddTaskCommand) -> list[str]:
        data = _parse_data_json(command.data_json)
        if command.task_type not in {job_type.value for job_type in JobType}:
            logger.warning("Queuing unrecognized job type %s", command.task_type)

        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            task_id = store.add(
                command.task_type,
                data,
                TaskOptions(description=command.description, depends_on=command.depends_on),
            )
        return [f"Task queued: task_id={task_id} type={command.task_type} status=pending"]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _store(settings) as store:
            tasks = (
                store.list_tasks()
                if status_filter is None
                else sorted(
                    store.list_by_status(status_filter),
                    key=lambda task: task.created_at,
                    reverse=True,
                )
            )

        shown = tasks[: command.limit]
        lines = [f"Tasks: {len(tasks)}"]
        for task in shown:
            lines.append(
                f"  {task.id} type={task.type} status={task.status.value} "
                f"progress={task.progress}% created_at={task.created_at.isoformat()}"
                + (f" depends_on={task.depends_on}" if task.depends_on else ""),
            )
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            task = store.get(command.task_id)
        if task is None:
            return [f"Task not found: {command.task_id}"]
        return _render_task_details(task, log_limit=command.log_limit)

    def retry_task(self, command: RetryTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            task = store.get(command.task_id)
            if task is None:
                raise ValueError(f"Task not found: {command.task_id}")
            if not store.retry(command.task_id):
                raise ValueError(
                    f"Only failed tasks can be retried: {command.task_id} is {task.status.value}",
                )
        return [f"Task re-queued: {command.task_id}"]

    def clear_tasks(self, command: ClearTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            removed = (
                store.clear_completed_and_failed()
                if command.include_failed
                else store.clear_completed()
            )
        scope = "completed and failed" if command.include_failed else "completed"
        return [f"Cleared {removed} {scope} task(s)"]

    def run(self, command: RunCommand) -> RunResult:
        settings = Settings.from_env(db_path=command.db_path)
        if command.max_concurrent is not None:
            settings = replace(
                settings,
                orchestrator=replace(settings.orchestrator, max_concurrent=command.max_concurrent),
            )
        return asyncio.run(self._run(settings, command))

    async def _run(self, settings: Settings, command: RunCommand) -> RunResult:
        orchestrator = Orchestrator(settings, runner=self.runner)
        lines: list[str] = []
        subscription = (
            orchestrator.subscribe(_echo_log_event)
            if command.follow_logs
            else None
        )
        failed_ids: set[str] = set()
        tracker = orchestrator.subscribe(lambda event: _track_failures(event, failed_ids))
        try:
            await orchestrator.start()
            if command.until_idle:
                await orchestrator.wait_until_idle()
            else:
                await _wait_forever()
        finally:
            tracker.close()
            if subscription is not None:
                subscription.close()
            summary = await orchestrator.shutdown()

        lines.append(
            "Scheduler summary: "
            f"ticks={summary.ticks} dispatched={summary.dispatched} "
            f"idle_ticks={summary.idle_ticks} tick_errors={summary.tick_errors}",
        )
        if failed_ids:
            lines.append(f"Failed tasks: {', '.join(sorted(failed_ids))}")
        return RunResult(lines=lines, success=not failed_ids)


@contextmanager
def _store(settings: Settings) -> Iterator[TaskStore]:
    store = TaskStore(settings.db_path)
    store.load()
    try:
        yield store
    finally:
        store.close()


async def _wait_forever() -> None:
    await asyncio.Event().wait()


def _echo_log_event(event: TaskEvent) -> None:
    if event.kind != TaskEventKind.TASK_LOG:
        return
    logger.info(
        "[%s] %s %s",
        event.task_id[:8],
        event.payload.get("level", "info"),
        event.payload.get("message", ""),
    )


def _track_failures(event: TaskEvent, failed_ids: set[str]) -> None:
    if event.kind != TaskEventKind.TASK_UPDATED:
        return
    status = event.payload.get("status")
    if status == TaskStatus.FAILED.value:
        failed_ids.add(event.task_id)
    elif status == TaskStatus.COMPLETED.value:
        failed_ids.discard(event.task_id)


def _parse_status(raw: str | None) -> TaskStatus | None:
    if raw is None:
        return None
    try:
        return TaskStatus(raw.strip().lower())
    except ValueError as error:
        allowed = ", ".join(status.value for status in TaskStatus)
        raise ValueError(f"Unsupported status: {raw!r}. Expected one of: {allowed}") from error


def _parse_data_json(raw: str) -> dict[str, object]:
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError as error:
        raise ValueError(f"--data must be a JSON object: {error.msg}") from error
    if not isinstance(parsed, dict):
        raise ValueError("--data must be a JSON object.")
    return parsed


def _render_task_details(task: Task, *, log_limit: int) -> list[str]:
    lines = [
        f"Task: {task.id}",
        f"Type: {task.type}",
        f"Status: {task.status.value}",
        f"Progress: {task.progress}%",
        f"Description: {task.description or '-'}",
        f"Depends on: {task.depends_on or '-'}",
        f"Created: {task.created_at.isoformat()}",
        f"Updated: {task.updated_at.isoformat()}",
        f"Error: {task.error or '-'}",
        f"Data: {json.dumps(task.data, ensure_ascii=False, sort_keys=True)}",
        "Result: "
        + (json.dumps(task.result, ensure_ascii=False, sort_keys=True) if task.result else "-"),
        f"Logs: {len(task.logs)}",
    ]
    for entry in task.logs[-log_limit:]:
        lines.append(f"  {entry.timestamp.isoformat()} [{entry.level}] {entry.message}")
    return lines
