"""External-process backends used by job handlers."""

from scenic_jobs.orchestrator.backend.base import ProcessResult, ProcessRunner
from scenic_jobs.orchestrator.backend.subprocess_runner import AsyncSubprocessRunner

__all__ = [
    "AsyncSubprocessRunner",
    "ProcessResult",
    "ProcessRunner",
]
