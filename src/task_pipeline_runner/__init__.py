"""Provide the public `task_pipeline_runner` package exports."""

from __future__ import annotations

from .config import PipelineSettings, load_settings
from .errors import (
    DependencyNotSatisfiedError,
    PipelineError,
    PipelineExistsError,
    PipelineNotFoundError,
    StateReadError,
    StateWriteError,
    WorktreeError,
)
from .models import PipelineRecord, PipelineStage, PipelineStatus, PipelineSummary, StaleTaskInfo
from .pipeline import PipelineDriver, PipelineRunResult, build_default_registry
from .recovery import RecoveryStats, recover_stale_tasks
from .storage import Container, JsonFileStorage, MemoryStorage, PipelineRepository
from .watchdog import WatchdogConfig, WatchdogService
from .worker import CommandCorrectiveWorker, CorrectiveWorker, WorkerRunResult
from .worktrees import WorktreeInfo, WorktreeManager

__all__ = [
    "CommandCorrectiveWorker",
    "Container",
    "CorrectiveWorker",
    "DependencyNotSatisfiedError",
    "JsonFileStorage",
    "MemoryStorage",
    "PipelineDriver",
    "PipelineError",
    "PipelineExistsError",
    "PipelineNotFoundError",
    "PipelineRecord",
    "PipelineRepository",
    "PipelineRunResult",
    "PipelineSettings",
    "PipelineStage",
    "PipelineStatus",
    "PipelineSummary",
    "RecoveryStats",
    "StaleTaskInfo",
    "StateReadError",
    "StateWriteError",
    "WatchdogConfig",
    "WatchdogService",
    "WorkerRunResult",
    "WorktreeError",
    "WorktreeInfo",
    "WorktreeManager",
    "build_default_registry",
    "load_settings",
    "recover_stale_tasks",
]
