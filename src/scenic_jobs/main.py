"""CLI entrypoint for scenic-jobs."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from scenic_jobs import __version__
from scenic_jobs.config import Settings
from scenic_jobs.logging_setup import setup_logging
from scenic_jobs.orchestrator.controllers import (
    AddTaskCommand,
    ClearTasksCommand,
    InspectTaskCommand,
    ListTasksCommand,
    OrchestratorCliController,
    RetryTaskCommand,
    RunCommand,
)
from scenic_jobs.orchestrator.models import JobType, TaskStatus

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

CommandT = TypeVar("CommandT")
ResultT = TypeVar("ResultT")


@click.group()
@click.version_option(version=__version__, prog_name="scenic-jobs")
def scenic_jobs() -> None:
    """Scenic-area data pipeline job orchestrator."""


@scenic_jobs.group()
def tasks() -> None:
    """Task queue inspection and administration."""


@tasks.command("add")
@click.argument("task_type", type=click.Choice([job_type.value for job_type in JobType]))
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--data",
    "data_json",
    default="{}",
    show_default=True,
    help="Job payload as a JSON object.",
)
@click.option("--description", default=None, help="Human-readable label.")
@click.option("--depends-on", default=None, help="Id of the task that caused this one.")
def tasks_add(
    task_type: str,
    db_path: Path | None,
    data_json: str,
    description: str | None,
    depends_on: str | None,
) -> None:
    """Queue a new task in `pending` status."""

    _emit_lines(
        _guard(
            ORCHESTRATOR_CONTROLLER.add_task,
            AddTaskCommand(
                db_path=db_path,
                task_type=task_type,
                data_json=data_json,
                description=description,
                depends_on=depends_on,
            ),
        ),
    )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Only show tasks in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
def tasks_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List tasks, newest first."""

    _emit_lines(
        _guard(
            ORCHESTRATOR_CONTROLLER.list_tasks,
            ListTasksCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@tasks.command("inspect")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--log-limit",
    type=click.IntRange(min=1),
    default=50,
    show_default=True,
    help="How many of the latest log entries to print.",
)
def tasks_inspect(task_id: str, db_path: Path | None, log_limit: int) -> None:
    """Show one task with its latest log entries."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.inspect_task(
            InspectTaskCommand(db_path=db_path, task_id=task_id, log_limit=log_limit),
        ),
    )


@tasks.command("retry")
@click.argument("task_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def tasks_retry(task_id: str, db_path: Path | None) -> None:
    """Move a failed task back to `pending`."""

    _emit_lines(
        _guard(
            ORCHESTRATOR_CONTROLLER.retry_task,
            RetryTaskCommand(db_path=db_path, task_id=task_id),
        ),
    )


@tasks.command("clear")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--include-failed/--completed-only",
    default=False,
    show_default=True,
    help="Also remove failed tasks.",
)
def tasks_clear(db_path: Path | None, include_failed: bool) -> None:
    """Permanently remove completed (and optionally failed) tasks."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.clear_tasks(
            ClearTasksCommand(db_path=db_path, include_failed=include_failed),
        ),
    )


@scenic_jobs.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--until-idle/--forever",
    default=False,
    show_default=True,
    help="Exit once no task is pending, running or waiting to be created.",
)
@click.option(
    "--max-concurrent",
    type=click.IntRange(min=1, max=64),
    default=None,
    help="Override SCENIC_JOBS_MAX_CONCURRENT.",
)
@click.option(
    "--follow-logs/--no-follow-logs",
    default=True,
    show_default=True,
    help="Echo task log entries to the console as they are appended.",
)
def run(
    db_path: Path | None,
    until_idle: bool,
    max_concurrent: int | None,
    follow_logs: bool,
) -> None:
    """Run the scheduler loop and dispatch pending tasks."""

    settings = Settings.from_env(db_path=db_path)
    setup_logging(
        log_dir=settings.log_dir,
        console_level=logging.DEBUG if settings.verbose_console else logging.INFO,
    )
    result = _guard(
        ORCHESTRATOR_CONTROLLER.run,
        RunCommand(
            db_path=db_path,
            until_idle=until_idle,
            max_concurrent=max_concurrent,
            follow_logs=follow_logs,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("One or more tasks failed.")


def _guard(handler: Callable[[CommandT], ResultT], command: CommandT) -> ResultT:
    try:
        return handler(command)
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    scenic_jobs()
