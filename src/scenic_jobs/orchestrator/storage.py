"""SQLModel table and engine policy for the persisted task collection."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from sqlalchemy import JSON, Column, Text, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import Field, SQLModel, create_engine

# `tasks add` and `tasks list` read the file while `run` rewrites it.
TASK_DB_PRAGMAS: tuple[tuple[str, str], ...] = (
    ("journal_mode", "WAL"),
    ("synchronous", "NORMAL"),
)


class TaskRecord(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    position: int = Field(index=True)
    type: str = Field(index=True)
    status: str = Field(index=True)
    progress: int = Field(default=0)
    data: Any = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    result: Any = Field(default=None, sa_column=Column(JSON, nullable=True))
    error: str | None = Field(default=None, sa_column=Column(Text))
    logs: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: str
    updated_at: str
    depends_on: str | None = Field(default=None, index=True)
    description: str | None = None


def open_task_engine(db_path: Path, *, busy_timeout_ms: int = 5000) -> Engine:
    """Open the task database, creating the file and the ``tasks`` table as needed."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        try:
            for name, value in TASK_DB_PRAGMAS:
                cursor.execute(f"PRAGMA {name} = {value}")
            cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
        finally:
            cursor.close()

    SQLModel.metadata.create_all(engine, tables=[TaskRecord.__table__])  # type: ignore[list-item]
    return engine
