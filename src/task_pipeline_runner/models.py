"""Define durable pipeline records and the derived views computed from them.

Records are persisted with camelCase keys so state files stay compatible with
other tooling that reads them; Python attributes use snake_case.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union


class PipelineStatus(str, Enum):
    """Represent the status of a pipeline record or one of its stages."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PipelineStage(str, Enum):
    """Enumerate the stage identifiers a task moves through."""

    DETECTED = "detected"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    IMPLEMENTING = "implementing"
    IMPLEMENTED = "implemented"
    GENERATING_TESTS = "generating_tests"
    VERIFYING = "verifying"
    CODEX_REVIEWING = "codex_reviewing"
    CODEX_REVIEWED = "codex_reviewed"
    CLAUDE_FIXING = "claude_fixing"
    CLAUDE_FIXED = "claude_fixed"
    MERGING = "merging"
    MERGED = "merged"
    PR_CREATING = "pr_creating"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {PipelineStatus.COMPLETED.value, PipelineStatus.FAILED.value}

StageId = Union[PipelineStage, str]


def stage_value(stage: StageId) -> str:
    return stage.value if isinstance(stage, Enum) else str(stage)


def default_metadata() -> dict[str, Any]:
    return {
        "analysis": None,
        "aiInstances": [],
        "branches": [],
        "prNumber": None,
        "reviewIterations": 0,
        "maxReviewIterations": 3,
        "agentExecution": {
            "gemini": None,
            "claude": None,
            "codex": None,
        },
    }


_STAGE_KEYS = ("name", "stage", "status", "startedAt", "completedAt", "duration", "error")


@dataclass
class StageEntry:
    name: str
    stage: str
    status: str = PipelineStatus.PENDING.value
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration: Optional[int] = None
    error: Optional[str] = None
    # Result fields merged in by stages (e.g. testsRun, fixAttempts).
    extra: dict[str, Any] = field(default_factory=dict)

    def merge(self, patch: Optional[dict[str, Any]]) -> None:
        for key, value in dict(patch or {}).items():
            if key == "name":
                self.name = str(value)
            elif key == "error":
                self.error = None if value is None else str(value)
            elif key in {"stage", "status", "startedAt", "completedAt", "duration"}:
                # Lifecycle fields are owned by the state store.
                continue
            else:
                self.extra[key] = value

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "stage": self.stage,
            "status": self.status,
        }
        if self.started_at is not None:
            data["startedAt"] = self.started_at
        if self.completed_at is not None:
            data["completedAt"] = self.completed_at
        if self.duration is not None:
            data["duration"] = self.duration
        if self.error is not None:
            data["error"] = self.error
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StageEntry":
        duration = data.get("duration")
        return cls(
            name=str(data.get("name") or data.get("stage") or ""),
            stage=str(data.get("stage") or ""),
            status=str(data.get("status") or PipelineStatus.PENDING.value),
            started_at=data.get("startedAt") or None,
            completed_at=data.get("completedAt") or None,
            duration=int(duration) if isinstance(duration, (int, float)) else None,
            error=data.get("error"),
            extra={k: v for k, v in data.items() if k not in _STAGE_KEYS},
        )


@dataclass
class ErrorEntry:
    stage: str
    error: str
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {"stage": self.stage, "error": self.error, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ErrorEntry":
        return cls(
            stage=str(data.get("stage") or ""),
            error=str(data.get("error") or ""),
            timestamp=str(data.get("timestamp") or ""),
        )


_RECORD_KEYS = (
    "taskId",
    "taskName",
    "currentStage",
    "status",
    "createdAt",
    "updatedAt",
    "completedAt",
    "failedAt",
    "totalDuration",
    "lastHeartbeat",
    "stages",
    "metadata",
    "errors",
    "version",
)


@dataclass
class PipelineRecord:
    task_id: str
    task_name: str
    current_stage: str
    status: str
    created_at: str
    updated_at: str
    stages: list[StageEntry] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=default_metadata)
    errors: list[ErrorEntry] = field(default_factory=list)
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None
    total_duration: Optional[int] = None
    last_heartbeat: Optional[str] = None
    version: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def find_stage(self, stage: StageId) -> Optional[StageEntry]:
        key = stage_value(stage)
        for entry in self.stages:
            if entry.stage == key:
                return entry
        return None

    def stage_status(self, stage: StageId) -> Optional[str]:
        entry = self.find_stage(stage)
        return entry.status if entry else None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "taskId": self.task_id,
            "taskName": self.task_name,
            "currentStage": self.current_stage,
            "status": self.status,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.completed_at is not None:
            data["completedAt"] = self.completed_at
        if self.failed_at is not None:
            data["failedAt"] = self.failed_at
        if self.total_duration is not None:
            data["totalDuration"] = self.total_duration
        if self.last_heartbeat is not None:
            data["lastHeartbeat"] = self.last_heartbeat
        data["stages"] = [entry.to_dict() for entry in self.stages]
        data["metadata"] = copy.deepcopy(self.metadata)
        data["errors"] = [entry.to_dict() for entry in self.errors]
        data["version"] = self.version
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineRecord":
        stages = [StageEntry.from_dict(s) for s in list(data.get("stages") or []) if isinstance(s, dict)]
        errors = [ErrorEntry.from_dict(e) for e in list(data.get("errors") or []) if isinstance(e, dict)]
        metadata = data.get("metadata")
        total = data.get("totalDuration")
        return cls(
            task_id=str(data.get("taskId") or ""),
            task_name=str(data.get("taskName") or ""),
            current_stage=str(data.get("currentStage") or PipelineStage.DETECTED.value),
            status=str(data.get("status") or PipelineStatus.PENDING.value),
            created_at=str(data.get("createdAt") or ""),
            updated_at=str(data.get("updatedAt") or data.get("createdAt") or ""),
            stages=stages,
            metadata=copy.deepcopy(metadata) if isinstance(metadata, dict) else {},
            errors=errors,
            completed_at=data.get("completedAt"),
            failed_at=data.get("failedAt"),
            total_duration=int(total) if isinstance(total, (int, float)) else None,
            last_heartbeat=data.get("lastHeartbeat") or None,
            version=int(data.get("version") or 0),
            extra={k: v for k, v in data.items() if k not in _RECORD_KEYS},
        )


@dataclass(frozen=True)
class StaleTaskInfo:
    task_id: str
    task_name: str
    current_stage: str
    status: str
    updated_at: str
    last_heartbeat: Optional[str]
    stale_duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "taskName": self.task_name,
            "currentStage": self.current_stage,
            "status": self.status,
            "updatedAt": self.updated_at,
            "lastHeartbeat": self.last_heartbeat,
            "staleDurationMs": self.stale_duration_ms,
        }


@dataclass(frozen=True)
class PipelineSummary:
    task_id: str
    task_name: str
    current_stage: str
    status: str
    progress: int
    duration: int
    review_iterations: int
    has_errors: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "taskName": self.task_name,
            "currentStage": self.current_stage,
            "status": self.status,
            "progress": self.progress,
            "duration": self.duration,
            "reviewIterations": self.review_iterations,
            "hasErrors": self.has_errors,
        }
