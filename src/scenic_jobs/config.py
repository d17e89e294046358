"""Runtime configuration for the job orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class OrchestratorSettings:
    """Scheduling and dependency-chaining settings."""

    max_concurrent: int = 3
    poll_interval_seconds: float = 1.0
    stagger_seconds: float = 2.0
    summary_delay_seconds: float = 1.0


@dataclass(slots=True)
class PipelineSettings:
    """Where data-collection scripts live and where they write."""

    assets_root: Path = Path("assets")
    scripts_dir: Path = Path("scripts")
    node_command: str = "node"
    workdir: Path = Path(".")
    default_search_query: str = "景点"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path("cache/tasks.db")
    log_dir: Path = Path(".local/scenic-jobs")
    verbose_console: bool = False
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("SCENIC_JOBS_DB_PATH", "cache/tasks.db")),
            log_dir=Path(os.getenv("SCENIC_JOBS_LOG_DIR", ".local/scenic-jobs")),
            verbose_console=_env_bool("SCENIC_JOBS_VERBOSE", default=False),
            orchestrator=OrchestratorSettings(
                max_concurrent=int(os.getenv("SCENIC_JOBS_MAX_CONCURRENT", "3")),
                poll_interval_seconds=float(
                    os.getenv("SCENIC_JOBS_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                stagger_seconds=float(os.getenv("SCENIC_JOBS_STAGGER_SECONDS", "2.0")),
                summary_delay_seconds=float(
                    os.getenv("SCENIC_JOBS_SUMMARY_DELAY_SECONDS", "1.0"),
                ),
            ),
            pipeline=PipelineSettings(
                assets_root=Path(os.getenv("SCENIC_JOBS_ASSETS_ROOT", "assets")),
                scripts_dir=Path(os.getenv("SCENIC_JOBS_SCRIPTS_DIR", "scripts")),
                node_command=os.getenv("SCENIC_JOBS_NODE_COMMAND", "node"),
                workdir=Path(os.getenv("SCENIC_JOBS_WORKDIR", ".")),
                default_search_query=os.getenv("SCENIC_JOBS_DEFAULT_SEARCH_QUERY", "景点"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the scheduler cannot work with."""

        if self.orchestrator.max_concurrent <= 0:
            raise ValueError("SCENIC_JOBS_MAX_CONCURRENT must be a positive integer.")
        if self.orchestrator.poll_interval_seconds <= 0:
            raise ValueError("SCENIC_JOBS_POLL_INTERVAL_SECONDS must be > 0.")
        if self.orchestrator.stagger_seconds < 0:
            raise ValueError("SCENIC_JOBS_STAGGER_SECONDS must be >= 0.")
        if self.orchestrator.summary_delay_seconds < 0:
            raise ValueError("SCENIC_JOBS_SUMMARY_DELAY_SECONDS must be >= 0.")
        if not self.pipeline.node_command.strip():
            raise ValueError("SCENIC_JOBS_NODE_COMMAND must not be empty.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
