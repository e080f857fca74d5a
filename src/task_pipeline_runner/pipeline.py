"""Drive one task through the registered stages, start to finish."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .comments import CommentSink, NullCommentSink
from .config import PipelineSettings
from .errors import PipelineError, PipelineExistsError, WorktreeError
from .models import PipelineRecord, PipelineStatus, stage_value
from .stages.base import StageContext, StageRegistry, StageRunner
from .stages.test_generation import TestGenerationStage
from .stages.verification import VerificationStage
from .storage.repository import PipelineRepository
from .worker import CorrectiveWorker
from .worktrees import WorktreeManager, task_branch_name


@dataclass
class PipelineRunResult:
    task_id: str
    success: bool
    status: str
    error: Optional[str] = None
    failed_stage: Optional[str] = None
    stages: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "success": self.success,
            "status": self.status,
            "error": self.error,
            "failedStage": self.failed_stage,
            "stages": self.stages,
        }


class PipelineDriver:
    """Run the registry's stages in order against a single task.

    A non-terminal record is resumed: stages already `completed` are skipped.
    The task's worktree, when one is used, is removed afterwards whatever the
    outcome, and cleanup never changes that outcome.
    """

    def __init__(
        self,
        repository: PipelineRepository,
        registry: StageRegistry,
        *,
        settings: Optional[PipelineSettings] = None,
        worktrees: Optional[WorktreeManager] = None,
        comments: Optional[CommentSink] = None,
        runner: Optional[StageRunner] = None,
        artifacts_dir: Optional[Path] = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.settings = settings or PipelineSettings()
        self.worktrees = worktrees
        self.comments = comments or NullCommentSink()
        self.runner = runner or StageRunner()
        self.artifacts_dir = artifacts_dir

    def _prepare_record(self, task_id: str, task_name: str, restart: bool) -> PipelineRecord:
        record = self.repository.get(task_id)
        if record is None:
            return self.repository.init(task_id, {"name": task_name})
        if record.is_terminal:
            if not restart:
                raise PipelineExistsError(task_id)
            return self.repository.init(task_id, {"name": task_name}, overwrite=True)
        logger.info("Resuming pipeline: task={} stage={}", task_id, record.current_stage)
        self.repository.update_heartbeat(task_id)
        return record

    def run(
        self,
        task_id: str,
        task_name: str,
        repo_path: Path,
        *,
        description: str = "",
        base_branch: str = "main",
        use_worktree: bool = True,
        restart: bool = False,
    ) -> PipelineRunResult:
        self._prepare_record(task_id, task_name, restart)
        worktree_path: Optional[Path] = None
        try:
            if use_worktree and self.worktrees is not None:
                try:
                    worktree_path = self.worktrees.create_worktree(task_id, base_branch, repo_path)
                except WorktreeError as exc:
                    record = self.repository.fail(task_id, exc, "Worktree setup failed")
                    return PipelineRunResult(task_id, False, record.status, error=str(exc))
                self.repository.update_metadata(
                    task_id,
                    {"branch": task_branch_name(task_id), "worktreePath": str(worktree_path)},
                )

            ctx = StageContext(
                task_id=task_id,
                task_name=task_name,
                repo_path=repo_path,
                repository=self.repository,
                settings=self.settings,
                description=description,
                worktree_path=worktree_path,
                base_branch=base_branch,
                comments=self.comments,
                artifacts_dir=self.artifacts_dir,
            )
            return self._run_stages(ctx)
        finally:
            if worktree_path is not None and self.worktrees is not None:
                self.worktrees.remove_worktree(task_id, repo_path)

    def _run_stages(self, ctx: StageContext) -> PipelineRunResult:
        task_id = ctx.task_id
        outcomes: dict[str, dict[str, Any]] = {}
        for stage in self.registry.ordered():
            key = stage_value(stage.stage_id)
            record = self.repository.get(task_id)
            if record is None or record.is_terminal:
                status = record.status if record else PipelineStatus.FAILED.value
                logger.warning("Pipeline stopped externally before {}: task={}", key, task_id)
                return PipelineRunResult(
                    task_id, False, status, error="Pipeline stopped externally", stages=outcomes
                )
            if record.stage_status(key) == PipelineStatus.COMPLETED.value:
                logger.debug("Skipping completed stage {}: task={}", key, task_id)
                continue

            result = self.runner.run(stage, ctx)
            outcomes[key] = result.to_dict()
            if result.success:
                continue
            if not stage.required:
                logger.warning("Optional stage {} failed, continuing: task={}", key, task_id)
                continue
            try:
                record = self.repository.fail(task_id, result.error or "Stage failed", f"Stage {key} failed")
            except PipelineError as exc:
                logger.error("Could not record failure for task {}: {}", task_id, exc)
                return PipelineRunResult(task_id, False, PipelineStatus.FAILED.value, result.error, key, outcomes)
            return PipelineRunResult(task_id, False, record.status, result.error, key, outcomes)

        record = self.repository.complete(task_id)
        success = record.status == PipelineStatus.COMPLETED.value
        return PipelineRunResult(
            task_id,
            success,
            record.status,
            error=None if success else "Pipeline stopped externally",
            stages=outcomes,
        )

    def abort(self, task_id: str, reason: str = "Aborted by operator") -> PipelineRecord:
        """Translate an external abort request into a terminal failure."""
        logger.warning("Aborting pipeline: task={} reason={}", task_id, reason)
        return self.repository.fail(task_id, "Task aborted", reason)


def build_default_registry(worker: CorrectiveWorker) -> StageRegistry:
    """Stages this package implements, in pipeline order."""
    registry = StageRegistry()
    registry.register(TestGenerationStage(worker))
    registry.register(VerificationStage(worker))
    return registry
