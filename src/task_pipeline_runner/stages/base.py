"""Base class, runner and registry for pipeline stages.

Each stage is a class that knows how to execute one unit of work against a
task.  The runner owns the state-store bookkeeping around it: the stage entry
is opened before `execute`, then completed or failed from the returned
`StageResult`.  Stages never raise to the driver; every failure comes back as
a result with `success=False`.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from ..comments import CommentSink, NullCommentSink
from ..config import PipelineSettings
from ..constants import ARTIFACTS_DIR, ERROR_TYPE_DEPENDENCY, ERROR_TYPE_EXECUTION, STATE_DIR_NAME
from ..errors import DependencyNotSatisfiedError, PipelineError
from ..io_utils import _ensure_gitignore
from ..models import PipelineStatus, StageId, stage_value
from ..storage.repository import PipelineRepository
from ..worktrees import task_branch_name


# ---------------------------------------------------------------------------
# Stage result
# ---------------------------------------------------------------------------

@dataclass
class StageResult:
    """Outcome of executing a single stage."""
    success: bool
    error: Optional[str] = None
    error_type: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **data: Any) -> "StageResult":
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: str, error_type: Optional[str] = None, **data: Any) -> "StageResult":
        return cls(success=False, error=error, error_type=error_type, data=data)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.error is not None:
            out["error"] = self.error
        if self.error_type is not None:
            out["errorType"] = self.error_type
        for key, value in self.data.items():
            out.setdefault(key, value)
        return out


# ---------------------------------------------------------------------------
# Stage context
# ---------------------------------------------------------------------------

@dataclass
class StageContext:
    """Everything a stage needs to execute."""
    task_id: str
    task_name: str
    repo_path: Optional[Path]
    repository: PipelineRepository
    settings: PipelineSettings = field(default_factory=PipelineSettings)
    description: str = ""
    worktree_path: Optional[Path] = None
    base_branch: str = "main"
    comments: CommentSink = field(default_factory=NullCommentSink)
    artifacts_dir: Optional[Path] = None

    @property
    def working_path(self) -> Path:
        path = self.worktree_path or self.repo_path
        if path is None:
            raise DependencyNotSatisfiedError(f"No working path for task {self.task_id}")
        return path

    @property
    def is_worktree(self) -> bool:
        return self.worktree_path is not None

    @property
    def branch(self) -> str:
        return task_branch_name(self.task_id)

    def log_dir(self) -> Path:
        """Directory for this task's command and worker logs."""
        base = self.artifacts_dir
        if base is None:
            root = self.repo_path or self.working_path
            state_dir = root / STATE_DIR_NAME
            _ensure_gitignore(state_dir)
            base = state_dir / ARTIFACTS_DIR
        path = base / self.task_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def heartbeat(self) -> None:
        self.repository.update_heartbeat(self.task_id)


# ---------------------------------------------------------------------------
# Base stage class
# ---------------------------------------------------------------------------

class Stage(ABC):
    """Abstract base for stage implementations."""

    # Stages that must be `completed` on the record before this one may run.
    requires: tuple[StageId, ...] = ()
    # A failed optional stage is recorded but does not fail the task.
    required: bool = True

    @property
    @abstractmethod
    def stage_id(self) -> StageId:
        """Stage identifier written to the pipeline record."""
        ...

    @property
    def display_name(self) -> str:
        return stage_value(self.stage_id).replace("_", " ").title()

    def validate(self, ctx: StageContext) -> None:
        """Raise `DependencyNotSatisfiedError` when the stage cannot start."""
        record = ctx.repository.get(ctx.task_id)
        if record is None:
            raise DependencyNotSatisfiedError(f"Pipeline not found for task: {ctx.task_id}")
        if ctx.repo_path is None:
            raise DependencyNotSatisfiedError(
                f"Repository path is required for {self.display_name.lower()}"
            )
        if not ctx.working_path.exists():
            raise DependencyNotSatisfiedError(f"Working path does not exist: {ctx.working_path}")
        for required in self.requires:
            if record.stage_status(required) != PipelineStatus.COMPLETED.value:
                raise DependencyNotSatisfiedError(
                    f"Stage {stage_value(required)} must be completed before {stage_value(self.stage_id)}"
                )

    @abstractmethod
    def execute(self, ctx: StageContext) -> StageResult:
        """Run the stage. Returns a StageResult."""
        ...


# ---------------------------------------------------------------------------
# Heartbeat pump
# ---------------------------------------------------------------------------

class HeartbeatPump:
    """Refresh a task's heartbeat from a daemon thread while a stage blocks."""

    def __init__(self, repository: PipelineRepository, task_id: str, interval_seconds: float) -> None:
        self.repository = repository
        self.task_id = task_id
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.repository.update_heartbeat(self.task_id)
            except Exception as exc:
                logger.warning("Heartbeat refresh failed for task {}: {}", self.task_id, exc)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name=f"heartbeat-{self.task_id}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=max(1.0, self.interval_seconds))
        self._thread = None

    def __enter__(self) -> "HeartbeatPump":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class StageRunner:
    """Run one stage with state-store bookkeeping around it."""

    def __init__(self, *, heartbeat: bool = True) -> None:
        self.heartbeat = heartbeat

    def run(self, stage: Stage, ctx: StageContext) -> StageResult:
        key = stage_value(stage.stage_id)
        try:
            stage.validate(ctx)
        except DependencyNotSatisfiedError as exc:
            logger.warning("Stage {} not started for task {}: {}", key, ctx.task_id, exc)
            return StageResult.failure(str(exc), ERROR_TYPE_DEPENDENCY)

        try:
            ctx.repository.update_stage(ctx.task_id, stage.stage_id, {"name": stage.display_name})
            ctx.heartbeat()
        except PipelineError as exc:
            logger.error("Could not open stage {} for task {}: {}", key, ctx.task_id, exc)
            return StageResult.failure(str(exc), ERROR_TYPE_EXECUTION)
        logger.info("Stage {} started: task={}", key, ctx.task_id)

        interval = ctx.settings.heartbeat_interval_ms / 1000
        pump = HeartbeatPump(ctx.repository, ctx.task_id, interval)
        try:
            if self.heartbeat:
                pump.start()
            result = stage.execute(ctx)
        except DependencyNotSatisfiedError as exc:
            result = StageResult.failure(str(exc), ERROR_TYPE_DEPENDENCY)
        except Exception as exc:
            logger.exception("Stage {} raised for task {}", key, ctx.task_id)
            result = StageResult.failure(str(exc) or exc.__class__.__name__, ERROR_TYPE_EXECUTION)
        finally:
            pump.stop()

        try:
            if result.success:
                ctx.repository.complete_stage(ctx.task_id, stage.stage_id, result.data)
                logger.info("Stage {} completed: task={}", key, ctx.task_id)
            else:
                ctx.repository.fail_stage(ctx.task_id, stage.stage_id, result.error or "Stage failed")
                logger.warning("Stage {} failed: task={} error={}", key, ctx.task_id, result.error)
        except PipelineError as exc:
            logger.error("Could not record stage {} outcome for task {}: {}", key, ctx.task_id, exc)
        return result


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class StageRegistry:
    """Ordered collection of stage instances.

    Registration order is execution order for the pipeline driver.
    """

    def __init__(self) -> None:
        self._stages: dict[str, Stage] = {}

    def register(self, stage: Stage) -> Stage:
        key = stage_value(stage.stage_id)
        if key in self._stages:
            raise ValueError(f"Stage already registered: {key}")
        self._stages[key] = stage
        return stage

    def get(self, stage_id: StageId) -> Stage:
        key = stage_value(stage_id)
        if key not in self._stages:
            available = ", ".join(self._stages.keys())
            raise KeyError(f"Unknown stage '{key}' (registered: {available})")
        return self._stages[key]

    def has(self, stage_id: StageId) -> bool:
        return stage_value(stage_id) in self._stages

    def ordered(self) -> list[Stage]:
        return list(self._stages.values())

    def list_stages(self) -> list[str]:
        return list(self._stages.keys())
