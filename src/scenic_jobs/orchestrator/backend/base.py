"""Process invocation interface consumed by job handlers."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True, frozen=True)
class ProcessResult:
    """Exit status and captured output of one external command."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ProcessRunner(Protocol):
    """Protocol implemented by process backends (real or fake)."""

    async def run(
        self,
        command: str,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
    ) -> ProcessResult:
        """Run ``command`` with ``args`` and return its outcome."""
