"""Exception hierarchy shared by the state store, stages and worktree manager."""

from __future__ import annotations

from pathlib import Path


class PipelineError(RuntimeError):
    """Base class for all task pipeline failures."""


class PipelineNotFoundError(PipelineError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Pipeline not found for task: {task_id}")
        self.task_id = task_id


class PipelineExistsError(PipelineError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Pipeline already exists for task: {task_id}")
        self.task_id = task_id


class StateReadError(PipelineError):
    def __init__(self, path: Path, detail: str) -> None:
        super().__init__(f"Failed to read pipeline state from {path}: {detail}")
        self.path = path


class StateWriteError(PipelineError):
    def __init__(self, path: Path, detail: str) -> None:
        super().__init__(f"Failed to write pipeline state to {path}: {detail}")
        self.path = path


class DependencyNotSatisfiedError(PipelineError):
    """A stage precondition does not hold; never retried automatically."""


class WorktreeError(PipelineError):
    """Raised when git refuses to create a task worktree."""
