"""Domain models for the orchestrator task store and execution."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    """Job kinds known to the executor dispatch table."""

    ORGANIZE_REGION_DATA = "ORGANIZE_REGION_DATA"
    SEARCH_CITY_SPOTS = "SEARCH_CITY_SPOTS"
    SEARCH_NEARBY_SPOTS = "SEARCH_NEARBY_SPOTS"
    GENERATE_SUMMARY = "GENERATE_SUMMARY"
    CREATE_CITY_STRUCTURE = "CREATE_CITY_STRUCTURE"
    PROCESS_NARRATION = "PROCESS_NARRATION"


class LogLevel(str, Enum):
    """Severity of a task log entry."""

    INFO = "info"
    SUCCESS = "success"
    WARN = "warn"
    ERROR = "error"


ALLOWED_TRANSITIONS: frozenset[tuple[TaskStatus, TaskStatus]] = frozenset(
    {
        (TaskStatus.PENDING, TaskStatus.RUNNING),
        (TaskStatus.RUNNING, TaskStatus.COMPLETED),
        (TaskStatus.RUNNING, TaskStatus.FAILED),
        (TaskStatus.FAILED, TaskStatus.PENDING),
    },
)


def is_allowed_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Return True when ``current -> target`` is legal (same status is not a transition)."""

    return current == target or (current, target) in ALLOWED_TRANSITIONS


@dataclass(slots=True)
class TaskLogEntry:
    """One append-only log line attached to a task."""

    timestamp: datetime
    level: str
    message: str

    def to_record(self) -> dict[str, str]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "message": self.message,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> TaskLogEntry:
        return cls(
            timestamp=from_iso(str(record["timestamp"])),
            level=str(record.get("level", LogLevel.INFO.value)),
            message=str(record.get("message", "")),
        )


@dataclass(slots=True)
class TaskOptions:
    """Optional attributes accepted when a task is added."""

    description: str | None = None
    depends_on: str | None = None

    @classmethod
    def coerce(cls, options: TaskOptions | Mapping[str, Any] | None) -> TaskOptions:
        """Accept either an instance or a plain mapping from callers."""

        if options is None:
            return cls()
        if isinstance(options, TaskOptions):
            return options
        return cls(
            description=options.get("description"),
            depends_on=options.get("depends_on"),
        )


@dataclass(slots=True)
class Task:
    """Mutable task state owned by the task store."""

    id: str
    type: str
    status: TaskStatus
    progress: int
    data: Any
    created_at: datetime
    updated_at: datetime
    result: dict[str, Any] | None = None
    error: str | None = None
    logs: list[TaskLogEntry] = field(default_factory=list)
    depends_on: str | None = None
    description: str | None = None

    def to_record(self) -> dict[str, Any]:
        """Serialize to the persisted record shape."""

        return {
            "id": self.id,
            "type": self.type,
            "status": self.status.value,
            "progress": self.progress,
            "data": self.data,
            "result": self.result,
            "error": self.error,
            "logs": [entry.to_record() for entry in self.logs],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "depends_on": self.depends_on,
            "description": self.description,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Task:
        """Rebuild a task from its persisted record shape."""

        return cls(
            id=str(record["id"]),
            type=str(record["type"]),
            status=TaskStatus(record["status"]),
            progress=int(record.get("progress") or 0),
            data=_record_data(record.get("data")),
            result=record.get("result"),
            error=record.get("error"),
            logs=[TaskLogEntry.from_record(item) for item in record.get("logs") or []],
            created_at=from_iso(str(record["created_at"])),
            updated_at=from_iso(str(record["updated_at"])),
            depends_on=record.get("depends_on"),
            description=record.get("description"),
        )


def _record_data(value: Any) -> Any:
    if value is None:
        return {}
    if isinstance(value, Mapping):
        return dict(value)
    return value
