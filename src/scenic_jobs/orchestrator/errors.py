"""Error taxonomy for the orchestrator."""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for orchestrator failures."""


class ValidationError(OrchestratorError):
    """Task cannot be dispatched: unknown type, bad payload or missing input."""


class InvalidTransitionError(ValidationError):
    """Requested status change is not part of the task state machine."""

    def __init__(self, task_id: str, current: str, target: str) -> None:
        super().__init__(f"Illegal status transition for task {task_id}: {current} -> {target}")
        self.task_id = task_id
        self.current = current
        self.target = target


class NotImplementedJobError(ValidationError):
    """Job type is registered but has no handler behind it yet."""

    def __init__(self, job_type: str) -> None:
        super().__init__(f"Job type {job_type} is not implemented")
        self.job_type = job_type


class ExecutionError(OrchestratorError):
    """Handler raised, or the external process exited non-zero."""

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class ProcessLaunchError(ExecutionError):
    """External process could not be started at all."""


class OutputMissingError(OrchestratorError):
    """Process reported success but the expected artifact does not exist."""


class PersistenceError(OrchestratorError):
    """Durable storage write or read failed."""
