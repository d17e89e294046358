"""Follow-up job scheduling once producer jobs complete."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from scenic_jobs.orchestrator.models import JobType, LogLevel, Task, TaskOptions
from scenic_jobs.orchestrator.repository import TaskStore

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(slots=True, frozen=True)
class CityWorkItem:
    """One city directory discovered under a region."""

    name: str
    path: Path


class DependencyScheduler:
    """Creates staggered follow-up tasks linked to their parent via ``depends_on``.

    ``ORGANIZE_REGION_DATA`` fans out into one ``SEARCH_CITY_SPOTS`` task per
    city directory, the *i*-th created ``i * stagger_seconds`` after the
    parent completes.  A chained ``SEARCH_CITY_SPOTS`` task is in turn
    followed by one ``GENERATE_SUMMARY`` task for the same city.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        assets_root: Path,
        workdir: Path | None = None,
        stagger_seconds: float = 2.0,
        summary_delay_seconds: float = 1.0,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.store = store
        self.assets_root = assets_root
        self.workdir = workdir
        self.stagger_seconds = stagger_seconds
        self.summary_delay_seconds = summary_delay_seconds
        self._sleep = sleep
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def on_task_completed(self, task: Task) -> None:
        """Completion listener registered with the executor."""

        if task.type == JobType.ORGANIZE_REGION_DATA.value:
            self.schedule_city_searches(task)
        elif task.type == JobType.SEARCH_CITY_SPOTS.value and task.data.get("chain_summary"):
            self.schedule_summary(task)

    def schedule_city_searches(self, parent: Task) -> list[CityWorkItem]:
        """Enumerate region cities and queue their staggered search tasks."""

        region_name = str(parent.data.get("region_name") or "")
        self.store.append_log(parent.id, f"Scheduling follow-up tasks for {region_name}")

        cities = self.discover_cities(parent.id, region_name)
        if not cities:
            return []

        self.store.append_log(parent.id, f"Found {len(cities)} cities to process")
        for index, city in enumerate(cities):
            self._spawn(
                self._create_city_search(parent.id, city, delay=index * self.stagger_seconds),
                name=f"follow-up-search-{parent.id}-{index}",
            )
        return cities

    def schedule_summary(self, search_task: Task) -> None:
        """Queue the summary job that follows a completed city search."""

        city_path = search_task.data.get("city_path")
        if not city_path:
            self.store.append_log(
                search_task.id,
                "No city_path on search task; summary not scheduled",
                LogLevel.WARN,
            )
            return
        self._spawn(
            self._create_summary(search_task, str(city_path), delay=self.summary_delay_seconds),
            name=f"follow-up-summary-{search_task.id}",
        )

    def discover_cities(self, parent_id: str, region_name: str) -> list[CityWorkItem]:
        """List city directories for ``region_name``; problems are logged on the parent."""

        region_path = self.assets_root / region_name
        resolved = self._resolve(region_path)
        if not region_name or not resolved.is_dir():
            self.store.append_log(
                parent_id,
                f"Region directory not found: {region_path}",
                LogLevel.WARN,
            )
            self.store.append_log(
                parent_id,
                f"No follow-up tasks will be scheduled for {region_name}",
            )
            return []

        try:
            entries = sorted(resolved.iterdir(), key=lambda entry: entry.name)
        except OSError as error:
            self.store.append_log(
                parent_id,
                f"Error reading region directory: {error}",
                LogLevel.ERROR,
            )
            return []

        cities = [
            CityWorkItem(name=entry.name, path=region_path / entry.name)
            for entry in entries
            if entry.is_dir()
        ]
        if not cities:
            self.store.append_log(parent_id, f"No cities found in {region_path}")
        return cities

    async def shutdown(self) -> None:
        """Cancel follow-ups whose stagger delay has not elapsed yet."""

        pending = list(self._pending)
        for handle in pending:
            handle.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("Cancelled %s pending follow-up creation(s)", len(pending))

    async def wait_idle(self) -> None:
        """Wait until every scheduled follow-up has been created."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _create_city_search(
        self,
        parent_id: str,
        city: CityWorkItem,
        *,
        delay: float,
    ) -> None:
        await self._sleep(delay)
        try:
            search_id = self.store.add(
                JobType.SEARCH_CITY_SPOTS.value,
                {"city_path": str(city.path), "chain_summary": True},
                TaskOptions(
                    description=f"Search spots for all scenic areas in {city.name}",
                    depends_on=parent_id,
                ),
            )
        except Exception as error:
            self.store.append_log(
                parent_id,
                f"Error creating SEARCH_CITY_SPOTS task for {city.name}: {error}",
                LogLevel.ERROR,
            )
            logger.exception("Failed to create follow-up search for %s", city.name)
            return
        self.store.append_log(
            parent_id,
            f"Created SEARCH_CITY_SPOTS task for {city.name}: {search_id}",
        )

    async def _create_summary(self, search_task: Task, city_path: str, *, delay: float) -> None:
        await self._sleep(delay)
        city_name = Path(city_path).name
        try:
            summary_id = self.store.add(
                JobType.GENERATE_SUMMARY.value,
                {"city_path": city_path},
                TaskOptions(
                    description=f"Generate summary for {city_name}",
                    depends_on=search_task.id,
                ),
            )
        except Exception as error:
            self.store.append_log(
                search_task.id,
                f"Error creating GENERATE_SUMMARY task for {city_name}: {error}",
                LogLevel.ERROR,
            )
            logger.exception("Failed to create follow-up summary for %s", city_name)
            return

        message = f"Created GENERATE_SUMMARY task for {city_name}: {summary_id}"
        self.store.append_log(search_task.id, message)
        if search_task.depends_on:
            self.store.append_log(search_task.depends_on, message)

    def _spawn(self, coro: Awaitable[None], *, name: str) -> None:
        handle = asyncio.get_running_loop().create_task(coro, name=name)  # type: ignore[arg-type]
        self._pending.add(handle)
        handle.add_done_callback(self._pending.discard)

    def _resolve(self, path: Path) -> Path:
        if path.is_absolute() or self.workdir is None:
            return path
        return self.workdir / path
