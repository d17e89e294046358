"""Job handlers for the scenic-area data acquisition pipeline.

Each handler validates its payload, runs one data-collection script through
the injected :class:`ProcessRunner` (or touches the filesystem directly) and
verifies the artifact the script is expected to leave behind.
"""

from __future__ import annotations

import json
import re
import shlex
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from scenic_jobs.config import PipelineSettings
from scenic_jobs.orchestrator.backend.base import ProcessResult, ProcessRunner
from scenic_jobs.orchestrator.errors import (
    ExecutionError,
    NotImplementedJobError,
    OutputMissingError,
    ValidationError,
)
from scenic_jobs.orchestrator.models import JobType, LogLevel
from scenic_jobs.orchestrator.repository import TaskStore

_SLUG_DROP = re.compile(r"[^\w\u4e00-\u9fff]", re.ASCII)
_CITY_SUBDIRS = ("images", "thumb", "audio")


def slugify(name: str) -> str:
    """Lower-case ``name`` and keep only ASCII word and CJK characters."""

    return _SLUG_DROP.sub("", name.lower())


def radius_for_grade(grade: str | None) -> int:
    """Default search radius in metres for a scenic-area grade."""

    if grade == "5A":
        return 1500
    if grade == "4A":
        return 1000
    return 500


@dataclass(slots=True)
class HandlerContext:
    """What a handler may touch while it runs."""

    task_id: str
    job_type: str
    data: dict[str, Any]
    store: TaskStore
    runner: ProcessRunner

    def progress(self, value: int) -> None:
        self.store.update(self.task_id, progress=value)

    def log(self, message: str, level: LogLevel = LogLevel.INFO) -> None:
        self.store.append_log(self.task_id, message, level)

    def require(self, key: str) -> Any:
        value = self.data.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(f"{self.job_type} requires data.{key}")
        return value


JobHandler = Callable[[HandlerContext], Awaitable[dict[str, Any]]]


class JobHandlers:
    """Handler implementations bound to pipeline settings."""

    def __init__(self, settings: PipelineSettings) -> None:
        self.settings = settings

    def dispatch_table(self) -> dict[str, JobHandler]:
        return {
            JobType.ORGANIZE_REGION_DATA.value: self.organize_region_data,
            JobType.SEARCH_CITY_SPOTS.value: self.search_city_spots,
            JobType.SEARCH_NEARBY_SPOTS.value: self.search_nearby_spots,
            JobType.GENERATE_SUMMARY.value: self.generate_summary,
            JobType.CREATE_CITY_STRUCTURE.value: self.create_city_structure,
            JobType.PROCESS_NARRATION.value: self.process_narration,
        }

    async def organize_region_data(self, ctx: HandlerContext) -> dict[str, Any]:
        region_name = str(ctx.require("region_name"))
        ctx.log(f"Organizing scenic areas data for {region_name} using CSV script")
        ctx.progress(10)

        command, result = await self._run_script(
            ctx,
            script="organize-scenic-areas-by-city-csv.js",
            args=["province", region_name],
            progress_before=20,
            progress_after=80,
        )
        return {
            "region_name": region_name,
            "command": command,
            "stdout": result.stdout,
            "message": "Region data organized successfully",
        }

    async def search_city_spots(self, ctx: HandlerContext) -> dict[str, Any]:
        city_path = Path(str(ctx.require("city_path")))
        ctx.log(f"Searching spots for all scenic areas in city: {city_path}")
        ctx.progress(10)

        scenic_area_file = city_path / "data" / "scenic-area.json"
        if not self._resolve(scenic_area_file).is_file():
            raise ValidationError(f"Scenic area file not found: {scenic_area_file}")

        command, result = await self._run_script(
            ctx,
            script="search-amap-spots-in-city.js",
            args=[str(scenic_area_file)],
            progress_before=30,
            progress_after=90,
        )

        spots_dir = city_path / "data" / "spots"
        resolved_spots_dir = self._resolve(spots_dir)
        if not resolved_spots_dir.is_dir():
            raise OutputMissingError(f"Spots directory was not created: {spots_dir}")
        spots_count = sum(1 for path in resolved_spots_dir.glob("*.json") if path.is_file())
        ctx.log(f"Created {spots_count} spots files in {spots_dir}")
        return {
            "city_path": str(city_path),
            "spots_dir": str(spots_dir),
            "spots_count": spots_count,
            "command": command,
            "stdout": result.stdout,
        }

    async def search_nearby_spots(self, ctx: HandlerContext) -> dict[str, Any]:
        scenic_area = ctx.require("scenic_area")
        if not isinstance(scenic_area, Mapping) or not scenic_area.get("name"):
            raise ValidationError(f"{ctx.job_type} requires data.scenic_area.name")
        city_path = Path(str(ctx.require("city_path")))
        options: Mapping[str, Any] = ctx.data.get("options") or {}
        provider = str(ctx.data.get("provider") or "baidu")
        area_name = str(scenic_area["name"])

        ctx.log(f"Searching spots for {area_name} using {provider} map API")
        ctx.progress(10)

        spots_dir = city_path / "data" / "spots"
        self._resolve(spots_dir).mkdir(parents=True, exist_ok=True)

        center = scenic_area.get("center") or scenic_area.get("coordinates")
        if not center or "lat" not in center or "lng" not in center:
            ctx.log(f"No center coordinates found for {area_name}", LogLevel.ERROR)
            raise ValidationError(f"No center coordinates found for {area_name}")

        radius = options.get("radius") or scenic_area.get("radius")
        if not radius:
            radius = radius_for_grade(scenic_area.get("level"))

        spot_file_name = f"{slugify(area_name)}.json"
        output_file = spots_dir / spot_file_name
        script = "searchAmapSpots.js" if provider == "amap" else "searchNearbySpots.js"
        args = [
            f"{center['lng']},{center['lat']}",
            str(radius),
            "-o",
            str(output_file),
            "-q",
            str(options.get("query") or self.settings.default_search_query),
        ]
        if options.get("type"):
            args.extend(["--type", str(options["type"])])

        await self._run_script(
            ctx,
            script=script,
            args=args,
            progress_before=30,
            progress_after=80,
        )

        resolved_output = self._resolve(output_file)
        if not resolved_output.is_file():
            raise OutputMissingError(f"Output file was not created: {output_file}")
        file_size = resolved_output.stat().st_size
        ctx.log(f"Created spots file: {output_file} ({file_size} bytes)")
        return {
            "output_file": str(output_file),
            "file_size": file_size,
            "spots_file": f"spots/{spot_file_name}",
        }

    async def generate_summary(self, ctx: HandlerContext) -> dict[str, Any]:
        city_path = Path(str(ctx.require("city_path")))
        ctx.log(f"Generating summary for {city_path}")
        ctx.progress(10)

        await self._run_script(
            ctx,
            script="generate_scenic_area_summary.js",
            args=[str(city_path)],
            progress_before=30,
            progress_after=80,
        )

        summary_file = city_path / "data" / "scenic-area.json"
        resolved_summary = self._resolve(summary_file)
        if not resolved_summary.is_file():
            raise OutputMissingError(f"Summary file was not created: {summary_file}")
        file_size = resolved_summary.stat().st_size
        ctx.log(f"Updated summary file: {summary_file} ({file_size} bytes)")
        return {"summary_file": str(summary_file), "file_size": file_size}

    async def create_city_structure(self, ctx: HandlerContext) -> dict[str, Any]:
        region_name = str(ctx.require("region_name"))
        city_name = str(ctx.require("city_name"))
        scenic_areas = ctx.data.get("scenic_areas") or []
        if not isinstance(scenic_areas, list):
            raise ValidationError(f"{ctx.job_type} requires data.scenic_areas to be a list")

        ctx.log(f"Creating city structure for {city_name}")
        ctx.progress(10)

        city_id = slugify(city_name)
        city_path = self.settings.assets_root / region_name.lower() / city_id
        data_path = city_path / "data"
        scenic_area_file = data_path / "scenic-area.json"

        formatted_areas = [_format_scenic_area(area) for area in scenic_areas]

        resolved_data = self._resolve(data_path)
        if not resolved_data.exists():
            resolved_data.mkdir(parents=True, exist_ok=True)
            ctx.log(f"Created directory: {data_path}")
        ctx.progress(30)

        directories = [city_path / name for name in _CITY_SUBDIRS]
        for directory in directories:
            resolved = self._resolve(directory)
            if not resolved.exists():
                resolved.mkdir(parents=True, exist_ok=True)
                ctx.log(f"Created directory: {directory}")
        ctx.progress(70)

        self._resolve(scenic_area_file).write_text(
            json.dumps(formatted_areas, ensure_ascii=False, indent=2),
            "utf-8",
        )
        ctx.log(f"Created scenic-area.json with {len(formatted_areas)} areas")
        ctx.progress(90)

        return {
            "city_path": str(city_path),
            "city_id": city_id,
            "scenic_area_file": str(scenic_area_file),
            "areas_count": len(formatted_areas),
            "directories": [str(directory) for directory in directories],
        }

    async def process_narration(self, ctx: HandlerContext) -> dict[str, Any]:
        raise NotImplementedJobError(ctx.job_type)

    async def _run_script(  # noqa: PLR0913
        self,
        ctx: HandlerContext,
        *,
        script: str,
        args: Sequence[str],
        progress_before: int,
        progress_after: int,
    ) -> tuple[str, ProcessResult]:
        script_path = self.settings.scripts_dir / script
        argv = [str(script_path), *args]
        command = shlex.join([self.settings.node_command, *argv])
        ctx.log(f"Executing: {command}")
        ctx.progress(progress_before)

        result = await ctx.runner.run(
            self.settings.node_command,
            argv,
            cwd=self.settings.workdir,
        )
        if not result.ok:
            detail = result.stderr.strip() or result.stdout.strip() or "no output"
            message = f"Script {script} exited with code {result.exit_code}: {detail}"
            ctx.log(f"Script error: {message}", LogLevel.ERROR)
            raise ExecutionError(message, exit_code=result.exit_code)

        if result.stderr.strip():
            ctx.log(f"Script stderr: {result.stderr.strip()}", LogLevel.WARN)
        ctx.log(f"Script output: {result.stdout.strip()}")
        ctx.progress(progress_after)
        return command, result

    def _resolve(self, path: Path) -> Path:
        if path.is_absolute():
            return path
        return self.settings.workdir / path


def _format_scenic_area(area: Any) -> dict[str, Any]:
    if not isinstance(area, Mapping) or not area.get("name"):
        raise ValidationError("Each scenic area requires a name")
    coordinates = area.get("coordinates") or area.get("center")
    if not coordinates or "lat" not in coordinates or "lng" not in coordinates:
        raise ValidationError(f"Scenic area {area['name']} has no coordinates")
    name = str(area["name"])
    grade = area.get("level")
    return {
        "name": name,
        "description": area.get("description"),
        "center": {"lat": coordinates["lat"], "lng": coordinates["lng"]},
        "radius": radius_for_grade(grade),
        "level": 18,
        "spots_file": f"spots/{slugify(name)}.json",
        "display": "show",
        "grade": grade,
        "address": area.get("address"),
    }
