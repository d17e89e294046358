"""Authoritative task store persisted through SQLModel + SQLite."""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from scenic_jobs.orchestrator.errors import (
    InvalidTransitionError,
    PersistenceError,
    ValidationError,
)
from scenic_jobs.orchestrator.events import EventChannel, TaskEvent, TaskEventKind
from scenic_jobs.orchestrator.models import (
    LogLevel,
    Task,
    TaskLogEntry,
    TaskOptions,
    TaskStatus,
    is_allowed_transition,
    utc_now,
)
from scenic_jobs.orchestrator.storage import TaskRecord, open_task_engine

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = frozenset(
    {"status", "progress", "data", "result", "error", "description", "depends_on"},
)


class TaskStore:
    """In-memory map of tasks, written through to SQLite on every mutation.

    The in-memory state is authoritative: a failed write is logged and the
    next successful ``save()`` catches the database up.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        channel: EventChannel | None = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid4()),
    ) -> None:
        self.db_path = db_path
        self.channel = channel or EventChannel()
        self._clock = clock
        self._id_factory = id_factory
        self._tasks: dict[str, Task] = {}
        self._issued_ids: set[str] = set()

        self.engine = open_task_engine(db_path)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def __len__(self) -> int:
        return len(self._tasks)

    # ---- persistence ----

    def load(self) -> int:
        """Replace in-memory state with the persisted collection.

        Tasks persisted as ``running`` cannot have survived the restart and
        come back as ``pending``.
        """

        with Session(self.engine) as session:
            rows = session.exec(select(TaskRecord).order_by(col(TaskRecord.position).asc())).all()

        tasks: dict[str, Task] = {}
        recovered = 0
        for row in rows:
            task = Task.from_record(_row_to_record(row))
            if task.status == TaskStatus.RUNNING:
                task.status = TaskStatus.PENDING
                recovered += 1
            tasks[task.id] = task

        self._tasks = tasks
        self._issued_ids.update(tasks)
        if recovered:
            logger.warning("Recovered %s interrupted task(s) as pending", recovered)
        logger.info("TaskStore loaded db=%s total=%s", self.db_path, len(tasks))
        return len(tasks)

    def save(self) -> bool:
        """Write the full collection; failures are logged, never raised."""

        try:
            with Session(self.engine) as session:
                session.exec(sa_delete(TaskRecord))
                session.add_all(
                    _record_to_row(task.to_record(), position=position)
                    for position, task in enumerate(self._tasks.values())
                )
                session.commit()
        except SQLAlchemyError as error:
            failure = PersistenceError(f"Failed to save tasks to {self.db_path}: {error}")
            logger.exception("%s", failure)
            return False
        return True

    # ---- mutations ----

    def add(
        self,
        task_type: str,
        data: Any = None,
        options: TaskOptions | Mapping[str, Any] | None = None,
    ) -> str:
        """Create a pending task and return its id.

        Never rejects ``data``: a payload that is not an object is stored as
        given and fails when the task is dispatched.
        """

        resolved = TaskOptions.coerce(options)
        task_id = self._next_id()
        now = self._clock()
        task = Task(
            id=task_id,
            type=str(task_type),
            status=TaskStatus.PENDING,
            progress=0,
            data=_payload(data),
            created_at=now,
            updated_at=now,
            depends_on=resolved.depends_on,
            description=resolved.description,
        )
        self._tasks[task_id] = task
        self.save()
        self._publish(TaskEventKind.TASK_ADDED, task)
        logger.info("Added task: %s (%s)", task.type, task_id)
        return task_id

    def update(self, task_id: str, **fields: Any) -> bool:
        """Merge ``fields`` into the task; False when the id is unknown."""

        task = self._tasks.get(task_id)
        if task is None:
            return False

        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown task field(s): {', '.join(sorted(unknown))}")

        if "status" in fields:
            target = TaskStatus(fields["status"])
            if not is_allowed_transition(task.status, target):
                raise InvalidTransitionError(task_id, task.status.value, target.value)
            fields["status"] = target
        if "progress" in fields:
            fields["progress"] = _clamp_progress(fields["progress"])
        if "data" in fields:
            fields["data"] = _payload(fields["data"])
        if fields.get("result") is not None:
            fields["result"] = _json_safe(fields["result"])

        for name, value in fields.items():
            setattr(task, name, value)
        task.updated_at = self._clock()

        self.save()
        self._publish(TaskEventKind.TASK_UPDATED, task)
        return True

    def append_log(self, task_id: str, message: str, level: LogLevel | str = LogLevel.INFO) -> bool:
        """Append one log entry; False when the id is unknown."""

        task = self._tasks.get(task_id)
        if task is None:
            return False

        entry = self._append_entry(task, message, level)
        self.save()
        self.channel.publish(
            TaskEvent(kind=TaskEventKind.TASK_LOG, task_id=task_id, payload=entry.to_record()),
        )
        return True

    def retry(self, task_id: str) -> bool:
        """Move a failed task back to pending; no-op for any other status."""

        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.FAILED:
            return False

        task.status = TaskStatus.PENDING
        task.progress = 0
        task.error = None
        entry = self._append_entry(task, "Task retried", LogLevel.INFO)
        self.save()
        self._publish(TaskEventKind.TASK_UPDATED, task)
        self.channel.publish(
            TaskEvent(kind=TaskEventKind.TASK_LOG, task_id=task_id, payload=entry.to_record()),
        )
        logger.info("Retried task %s", task_id)
        return True

    def clear_completed(self) -> int:
        """Delete every completed task; returns how many were removed."""

        return self._remove_by_status({TaskStatus.COMPLETED})

    def clear_completed_and_failed(self) -> int:
        """Delete every completed or failed task; returns how many were removed."""

        return self._remove_by_status({TaskStatus.COMPLETED, TaskStatus.FAILED})

    # ---- queries ----

    def get(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return copy.deepcopy(task) if task is not None else None

    def list_tasks(self) -> list[Task]:
        """All tasks, newest first."""

        ordered = sorted(self._tasks.values(), key=lambda task: task.created_at, reverse=True)
        return [copy.deepcopy(task) for task in ordered]

    def list_by_status(self, status: TaskStatus | str) -> list[Task]:
        """Tasks with ``status`` in insertion order, oldest first."""

        wanted = TaskStatus(status)
        return [copy.deepcopy(task) for task in self._tasks.values() if task.status == wanted]

    def count_by_status(self, status: TaskStatus | str) -> int:
        wanted = TaskStatus(status)
        return sum(1 for task in self._tasks.values() if task.status == wanted)

    # ---- helpers ----

    def _next_id(self) -> str:
        task_id = self._id_factory()
        while task_id in self._issued_ids:
            task_id = self._id_factory()
        self._issued_ids.add(task_id)
        return task_id

    def _append_entry(self, task: Task, message: str, level: LogLevel | str) -> TaskLogEntry:
        now = self._clock()
        entry = TaskLogEntry(timestamp=now, level=LogLevel(level).value, message=message)
        task.logs.append(entry)
        task.updated_at = now
        return entry

    def _remove_by_status(self, statuses: set[TaskStatus]) -> int:
        doomed = [task_id for task_id, task in self._tasks.items() if task.status in statuses]
        for task_id in doomed:
            del self._tasks[task_id]
        self.save()
        if doomed:
            logger.info(
                "Cleared %s task(s) with status %s",
                len(doomed),
                "/".join(sorted(status.value for status in statuses)),
            )
        return len(doomed)

    def _publish(self, kind: TaskEventKind, task: Task) -> None:
        self.channel.publish(TaskEvent(kind=kind, task_id=task.id, payload=task.to_record()))


def _clamp_progress(value: Any) -> int:
    return max(0, min(100, int(value)))


def _json_safe(value: Any) -> Any:
    """Normalize ``value`` to exactly what the JSON columns will hold.

    Unknown objects are stored as their ``str()``; a value that cannot be
    encoded at all (non-string keys, cycles) is stored as its ``repr()``.
    One bad payload must not make every later ``save()`` fail.
    """

    try:
        return json.loads(json.dumps(value, ensure_ascii=False, default=str))
    except (TypeError, ValueError):
        logger.warning("Payload is not JSON-encodable; storing its repr")
        return repr(value)


def _payload(data: Any) -> Any:
    if data is None:
        return {}
    if isinstance(data, Mapping):
        return _json_safe(dict(data))
    return _json_safe(data)


def _record_to_row(record: dict[str, Any], *, position: int) -> TaskRecord:
    return TaskRecord(position=position, **record)


def _row_to_record(row: TaskRecord) -> dict[str, Any]:
    return {
        "id": row.id,
        "type": row.type,
        "status": row.status,
        "progress": row.progress,
        "data": row.data,
        "result": row.result,
        "error": row.error,
        "logs": row.logs,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
        "depends_on": row.depends_on,
        "description": row.description,
    }
