"""asyncio subprocess backend for data-collection scripts."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from pathlib import Path

from scenic_jobs.orchestrator.backend.base import ProcessResult
from scenic_jobs.orchestrator.errors import ProcessLaunchError

logger = logging.getLogger(__name__)


class AsyncSubprocessRunner:
    """Run a command without blocking the event loop.

    No timeout is applied: a hung script keeps its concurrency slot until it
    exits.
    """

    def __init__(self, *, env: dict[str, str] | None = None) -> None:
        self.env = env

    async def run(
        self,
        command: str,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
    ) -> ProcessResult:
        argv = [command, *args]
        logger.debug("Spawning %s (cwd=%s)", argv, cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd) if cwd is not None else None,
                env=self.env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise ProcessLaunchError(f"Command not found: {command}") from error
        except OSError as error:
            raise ProcessLaunchError(f"Failed to start {command}: {error}") from error

        stdout, stderr = await process.communicate()
        exit_code = process.returncode if process.returncode is not None else -1
        logger.debug("%s exited with code %s", command, exit_code)
        return ProcessResult(
            exit_code=exit_code,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
