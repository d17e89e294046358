from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import replace
from pathlib import Path

import allure
import pytest

from scenic_jobs.config import Settings
from scenic_jobs.orchestrator.events import TaskEvent, TaskEventKind
from scenic_jobs.orchestrator.handlers import HandlerContext
from scenic_jobs.orchestrator.models import JobType, TaskStatus
from scenic_jobs.orchestrator.repository import TaskStore
from scenic_jobs.orchestrator.services import Orchestrator

pytestmark = [
    allure.epic("Job Orchestrator"),
    allure.feature("Orchestrator Lifecycle"),
]


def _seed_region(root: Path, region: str, cities: list[str]) -> None:
    for city in cities:
        data_dir = root / "assets" / region / city / "data"
        data_dir.mkdir(parents=True)
        (data_dir / "scenic-area.json").write_text("[]", "utf-8")


@pytest.mark.asyncio
async def test_region_pipeline_runs_to_completion(
    settings: Settings,
    fake_runner,
    recording_sleep,
    tmp_path: Path,
) -> None:
    _seed_region(tmp_path, "henan", ["anyang", "kaifeng"])

    def _pretend_scripts(_command, args, cwd) -> None:
        if args[0].endswith("search-amap-spots-in-city.js"):
            spots_dir = cwd / Path(args[1]).parent / "spots"
            spots_dir.mkdir(exist_ok=True)
            (spots_dir / "area.json").write_text("[]", "utf-8")

    fake_runner.side_effect = _pretend_scripts
    events: list[TaskEvent] = []

    async with Orchestrator(settings, runner=fake_runner, sleep=recording_sleep) as orchestrator:
        orchestrator.subscribe(events.append)
        root_id = orchestrator.add_task(
            JobType.ORGANIZE_REGION_DATA.value,
            {"region_name": "henan"},
        )
        await orchestrator.wait_until_idle()
        tasks = orchestrator.get_all_tasks()

    assert Counter(task.type for task in tasks) == {
        JobType.ORGANIZE_REGION_DATA.value: 1,
        JobType.SEARCH_CITY_SPOTS.value: 2,
        JobType.GENERATE_SUMMARY.value: 2,
    }
    assert {task.status for task in tasks} == {TaskStatus.COMPLETED}
    searches = [task for task in tasks if task.type == JobType.SEARCH_CITY_SPOTS.value]
    summaries = [task for task in tasks if task.type == JobType.GENERATE_SUMMARY.value]
    assert {task.depends_on for task in searches} == {root_id}
    assert {task.depends_on for task in summaries} == {task.id for task in searches}
    assert sorted(recording_sleep.delays) == [0.0, 1.0, 1.0, 2.0]
    assert any(event.kind == TaskEventKind.TASK_ADDED for event in events)
    assert len(fake_runner.calls) == 5


@pytest.mark.asyncio
async def test_interrupted_task_is_rerun_after_restart(
    settings: Settings,
    fake_runner,
) -> None:
    seeded = TaskStore(settings.db_path)
    task_id = seeded.add("ECHO", {"value": 1})
    seeded.update(task_id, status=TaskStatus.RUNNING, progress=50)
    seeded.close()
    runs: list[str] = []

    async def _echo(ctx: HandlerContext) -> dict:
        runs.append(ctx.task_id)
        return {"value": ctx.data["value"]}

    orchestrator = Orchestrator(settings, runner=fake_runner, handlers={"ECHO": _echo})
    async with orchestrator:
        await orchestrator.wait_until_idle()
        task = orchestrator.get_task(task_id)

    assert runs == [task_id]
    assert task is not None
    assert task.status == TaskStatus.COMPLETED
    assert task.result == {"value": 1}


@pytest.mark.asyncio
async def test_retry_reruns_failed_task(settings: Settings, fake_runner) -> None:
    attempts: list[int] = []

    async def _flaky(_ctx: HandlerContext) -> dict:
        attempts.append(len(attempts) + 1)
        if len(attempts) == 1:
            raise RuntimeError("API quota exceeded")
        return {"attempt": len(attempts)}

    orchestrator = Orchestrator(settings, runner=fake_runner, handlers={"FLAKY": _flaky})
    async with orchestrator:
        task_id = orchestrator.add_task("FLAKY")
        await orchestrator.wait_until_idle()
        failed = orchestrator.get_task(task_id)
        assert failed is not None
        assert failed.status == TaskStatus.FAILED
        assert [task.id for task in orchestrator.get_tasks_by_status("failed")] == [task_id]

        assert orchestrator.retry_task(task_id) is True
        await orchestrator.wait_until_idle()
        task = orchestrator.get_task(task_id)

    assert task is not None
    assert task.status == TaskStatus.COMPLETED
    assert task.result == {"attempt": 2}
    assert task.error is None
    assert [entry.message for entry in task.logs].count("Task retried") == 1


@pytest.mark.asyncio
async def test_shutdown_persists_final_state(settings: Settings, fake_runner) -> None:
    async def _ok(_ctx: HandlerContext) -> dict:
        return {}

    orchestrator = Orchestrator(settings, runner=fake_runner, handlers={"OK": _ok})
    await orchestrator.start()
    done_id = orchestrator.add_task("OK")
    await orchestrator.wait_until_idle()
    assert orchestrator.clear_completed_tasks() == 1
    kept_id = orchestrator.add_task("UNREGISTERED")
    await orchestrator.wait_until_idle()
    await orchestrator.shutdown()

    reader = TaskStore(settings.db_path)
    try:
        reader.load()
        assert reader.get(done_id) is None
        assert reader.get(kept_id).status == TaskStatus.FAILED  # type: ignore[union-attr]
    finally:
        reader.close()


@pytest.mark.asyncio
async def test_shutdown_drops_follow_ups_of_handlers_finishing_during_shutdown(
    settings: Settings,
    fake_runner,
    tmp_path: Path,
) -> None:
    _seed_region(tmp_path, "henan", ["anyang", "kaifeng"])
    release = asyncio.Event()

    async def _slow_organize(_ctx: HandlerContext) -> dict:
        await release.wait()
        return {}

    orchestrator = Orchestrator(
        settings,
        runner=fake_runner,
        handlers={JobType.ORGANIZE_REGION_DATA.value: _slow_organize},
    )
    await orchestrator.start()
    root_id = orchestrator.add_task(JobType.ORGANIZE_REGION_DATA.value, {"region_name": "henan"})
    while orchestrator.get_task(root_id).status != TaskStatus.RUNNING:  # type: ignore[union-attr]
        await asyncio.sleep(0.01)

    stopping = asyncio.create_task(orchestrator.shutdown())
    await asyncio.sleep(0.05)
    assert not stopping.done()
    release.set()
    await stopping

    assert orchestrator.dependencies.pending_count == 0
    reader = TaskStore(settings.db_path)
    try:
        reader.load()
        assert reader.get(root_id).status == TaskStatus.COMPLETED  # type: ignore[union-attr]
    finally:
        reader.close()


@pytest.mark.asyncio
async def test_wait_until_idle_requires_started_orchestrator(settings: Settings) -> None:
    orchestrator = Orchestrator(settings)
    try:
        with pytest.raises(RuntimeError, match="not running"):
            await orchestrator.wait_until_idle()
    finally:
        await orchestrator.shutdown()


def test_invalid_settings_are_rejected(settings: Settings) -> None:
    broken = replace(settings, orchestrator=replace(settings.orchestrator, max_concurrent=0))

    with pytest.raises(ValueError, match="SCENIC_JOBS_MAX_CONCURRENT"):
        Orchestrator(broken)
