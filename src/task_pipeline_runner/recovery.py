"""Startup sweep for tasks left in progress by a crashed or killed driver."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from .config import PipelineSettings
from .errors import PipelineError
from .storage.repository import PipelineRepository


@dataclass
class RecoveryStats:
    total_stale: int = 0
    recovered: int = 0
    failed: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalStale": self.total_stale,
            "recovered": self.recovered,
            "failed": self.failed,
            "errors": list(self.errors),
        }


def recover_stale_tasks(
    repository: PipelineRepository,
    settings: PipelineSettings,
    *,
    mark_as_failed: bool | None = None,
) -> RecoveryStats:
    """Fail or reset every stale task once.

    `mark_as_failed` overrides `settings.stale_task_auto_fail` for a single
    run (the CLI's `recover --reset`).
    """
    stats = RecoveryStats()
    if not settings.stale_task_recovery_enabled:
        logger.info("Stale task recovery is disabled")
        return stats

    auto_fail = settings.stale_task_auto_fail if mark_as_failed is None else mark_as_failed
    stale = repository.find_stale_tasks(settings.stale_threshold_ms)
    stats.total_stale = len(stale)
    if not stale:
        return stats

    logger.warning("Found {} stale task(s)", len(stale))
    for info in stale:
        logger.info(
            "Recovering stale task: task={} name={} stage={} stale_for={}m",
            info.task_id,
            info.task_name,
            info.current_stage,
            round(info.stale_duration_ms / 60000),
        )
        try:
            repository.recover_stale_task(info.task_id, auto_fail)
        except PipelineError as exc:
            stats.failed += 1
            stats.errors.append({"taskId": info.task_id, "error": str(exc)})
            logger.error("Failed to recover stale task {}: {}", info.task_id, exc)
            continue
        stats.recovered += 1
        logger.info(
            "Stale task {}: task={}",
            "marked as failed" if auto_fail else "reset for resumption",
            info.task_id,
        )

    if stats.recovered:
        logger.info("Recovered {} stale task(s)", stats.recovered)
    if stats.failed:
        logger.error("Failed to recover {} stale task(s)", stats.failed)
    return stats
