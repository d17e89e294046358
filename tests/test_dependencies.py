from __future__ import annotations

import asyncio
from pathlib import Path

import allure
import pytest

from scenic_jobs.orchestrator.dependencies import DependencyScheduler
from scenic_jobs.orchestrator.models import JobType, TaskStatus
from scenic_jobs.orchestrator.repository import TaskStore

pytestmark = [
    allure.epic("Job Orchestrator"),
    allure.feature("Follow-up Scheduling"),
]


def _completed(store: TaskStore, job_type: JobType, data: dict, depends_on: str | None = None):
    task_id = store.add(job_type.value, data, {"depends_on": depends_on})
    store.update(task_id, status=TaskStatus.RUNNING)
    store.update(task_id, status=TaskStatus.COMPLETED, progress=100, result={})
    task = store.get(task_id)
    assert task is not None
    return task


def _scheduler(store: TaskStore, tmp_path: Path, sleep) -> DependencyScheduler:
    return DependencyScheduler(
        store=store,
        assets_root=Path("assets"),
        workdir=tmp_path,
        stagger_seconds=2.0,
        summary_delay_seconds=1.0,
        sleep=sleep,
    )


@pytest.mark.asyncio
async def test_region_completion_fans_out_staggered_city_searches(
    store: TaskStore,
    tmp_path: Path,
    recording_sleep,
) -> None:
    region_dir = tmp_path / "assets" / "henan"
    for city in ("zhengzhou", "anyang", "kaifeng"):
        (region_dir / city).mkdir(parents=True)
    (region_dir / "README.md").write_text("not a city", "utf-8")
    parent = _completed(store, JobType.ORGANIZE_REGION_DATA, {"region_name": "henan"})
    dependencies = _scheduler(store, tmp_path, recording_sleep)

    dependencies.on_task_completed(parent)
    await dependencies.wait_idle()

    searches = store.list_by_status(TaskStatus.PENDING)
    assert [task.type for task in searches] == [JobType.SEARCH_CITY_SPOTS.value] * 3
    assert [task.data for task in searches] == [
        {"city_path": "assets/henan/anyang", "chain_summary": True},
        {"city_path": "assets/henan/kaifeng", "chain_summary": True},
        {"city_path": "assets/henan/zhengzhou", "chain_summary": True},
    ]
    assert {task.depends_on for task in searches} == {parent.id}
    assert searches[0].description == "Search spots for all scenic areas in anyang"
    assert recording_sleep.delays == [0.0, 2.0, 4.0]

    parent_logs = [entry.message for entry in store.get(parent.id).logs]  # type: ignore[union-attr]
    assert "Scheduling follow-up tasks for henan" in parent_logs
    assert "Found 3 cities to process" in parent_logs
    for task in searches:
        city = Path(task.data["city_path"]).name
        assert f"Created SEARCH_CITY_SPOTS task for {city}: {task.id}" in parent_logs


@pytest.mark.asyncio
async def test_missing_region_directory_schedules_nothing(
    store: TaskStore,
    tmp_path: Path,
    recording_sleep,
) -> None:
    parent = _completed(store, JobType.ORGANIZE_REGION_DATA, {"region_name": "atlantis"})
    dependencies = _scheduler(store, tmp_path, recording_sleep)

    dependencies.on_task_completed(parent)
    await dependencies.wait_idle()

    assert len(store) == 1
    parent_task = store.get(parent.id)
    assert parent_task is not None
    logs = [(entry.level, entry.message) for entry in parent_task.logs]
    assert ("warn", "Region directory not found: assets/atlantis") in logs
    assert ("info", "No follow-up tasks will be scheduled for atlantis") in logs
    assert recording_sleep.delays == []


@pytest.mark.asyncio
async def test_empty_region_directory_logs_no_cities(
    store: TaskStore,
    tmp_path: Path,
    recording_sleep,
) -> None:
    (tmp_path / "assets" / "henan").mkdir(parents=True)
    parent = _completed(store, JobType.ORGANIZE_REGION_DATA, {"region_name": "henan"})
    dependencies = _scheduler(store, tmp_path, recording_sleep)

    assert dependencies.schedule_city_searches(parent) == []

    messages = [entry.message for entry in store.get(parent.id).logs]  # type: ignore[union-attr]
    assert "No cities found in assets/henan" in messages
    assert len(store) == 1


@pytest.mark.asyncio
async def test_chained_search_completion_queues_summary(
    store: TaskStore,
    tmp_path: Path,
    recording_sleep,
) -> None:
    root = _completed(store, JobType.ORGANIZE_REGION_DATA, {"region_name": "henan"})
    search = _completed(
        store,
        JobType.SEARCH_CITY_SPOTS,
        {"city_path": "assets/henan/kaifeng", "chain_summary": True},
        depends_on=root.id,
    )
    dependencies = _scheduler(store, tmp_path, recording_sleep)

    dependencies.on_task_completed(search)
    await dependencies.wait_idle()

    [summary] = store.list_by_status(TaskStatus.PENDING)
    assert summary.type == JobType.GENERATE_SUMMARY.value
    assert summary.data == {"city_path": "assets/henan/kaifeng"}
    assert summary.depends_on == search.id
    assert summary.description == "Generate summary for kaifeng"
    assert recording_sleep.delays == [1.0]

    expected = f"Created GENERATE_SUMMARY task for kaifeng: {summary.id}"
    for task_id in (search.id, root.id):
        messages = [entry.message for entry in store.get(task_id).logs]  # type: ignore[union-attr]
        assert expected in messages


@pytest.mark.asyncio
async def test_unchained_tasks_schedule_nothing(
    store: TaskStore,
    tmp_path: Path,
    recording_sleep,
) -> None:
    dependencies = _scheduler(store, tmp_path, recording_sleep)
    manual_search = _completed(
        store,
        JobType.SEARCH_CITY_SPOTS,
        {"city_path": "assets/henan/kaifeng"},
    )
    summary = _completed(store, JobType.GENERATE_SUMMARY, {"city_path": "assets/henan/kaifeng"})

    dependencies.on_task_completed(manual_search)
    dependencies.on_task_completed(summary)

    assert dependencies.pending_count == 0
    assert len(store) == 2


@pytest.mark.asyncio
async def test_shutdown_drops_follow_ups_still_waiting(
    store: TaskStore,
    tmp_path: Path,
) -> None:
    async def _never(_delay: float) -> None:
        await asyncio.Event().wait()

    (tmp_path / "assets" / "henan" / "zhengzhou").mkdir(parents=True)
    parent = _completed(store, JobType.ORGANIZE_REGION_DATA, {"region_name": "henan"})
    dependencies = _scheduler(store, tmp_path, _never)

    dependencies.on_task_completed(parent)
    assert dependencies.pending_count == 1

    await dependencies.shutdown()

    assert dependencies.pending_count == 0
    assert len(store) == 1
