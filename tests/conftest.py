"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from scenic_jobs.config import OrchestratorSettings, PipelineSettings, Settings
from scenic_jobs.orchestrator.backend import ProcessResult
from scenic_jobs.orchestrator.repository import TaskStore

SideEffect = Callable[[str, Sequence[str], Path | None], None]


@dataclass(slots=True)
class RecordedCall:
    command: str
    args: list[str]
    cwd: Path | None


@dataclass(slots=True)
class FakeProcessRunner:
    """Process runner double: records calls and returns a canned result.

    ``side_effect`` runs before the result is returned, so tests can create the
    artifacts a real script would leave behind.
    """

    result: ProcessResult = field(
        default_factory=lambda: ProcessResult(exit_code=0, stdout="ok", stderr=""),
    )
    side_effect: SideEffect | None = None
    calls: list[RecordedCall] = field(default_factory=list)

    async def run(
        self,
        command: str,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
    ) -> ProcessResult:
        self.calls.append(RecordedCall(command=command, args=list(args), cwd=cwd))
        if self.side_effect is not None:
            self.side_effect(command, args, cwd)
        return self.result


class SteppingClock:
    """Deterministic clock that advances one second per call."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 1, 8, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(seconds=1)
        return value


class RecordingSleep:
    """Replacement for ``asyncio.sleep`` that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture()
def fake_runner() -> FakeProcessRunner:
    return FakeProcessRunner()


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture()
def store(tmp_path: Path, clock: SteppingClock):
    task_store = TaskStore(tmp_path / "cache" / "tasks.db", clock=clock)
    yield task_store
    task_store.close()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "cache" / "tasks.db",
        log_dir=tmp_path / "logs",
        orchestrator=OrchestratorSettings(
            max_concurrent=3,
            poll_interval_seconds=0.01,
            stagger_seconds=2.0,
            summary_delay_seconds=1.0,
        ),
        pipeline=PipelineSettings(
            assets_root=Path("assets"),
            scripts_dir=Path("scripts"),
            node_command="node",
            workdir=tmp_path,
        ),
    )
