"""Pipeline state repository: the single source of truth for task progress."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Callable, Optional, Union

from loguru import logger

from ..constants import STALE_STAGE_ERROR, TOTAL_STAGES
from ..errors import PipelineExistsError, PipelineNotFoundError
from ..models import (
    ErrorEntry,
    PipelineRecord,
    PipelineStage,
    PipelineStatus,
    PipelineSummary,
    StageEntry,
    StageId,
    StaleTaskInfo,
    default_metadata,
    stage_value,
)
from ..utils import _ms_between, _parse_iso, _to_iso, _utcnow
from .interfaces import StateStorage

ErrorLike = Union[BaseException, str]
Mutator = Callable[[PipelineRecord, str], bool]


def _error_message(error: ErrorLike) -> str:
    return str(error)


class PipelineRepository:
    """Read and transition `PipelineRecord`s held by an injected storage handle.

    Every write runs inside `storage.transaction()` so concurrent writers on
    the same backing store cannot lose each other's updates. Write operations
    on an unknown task raise `PipelineNotFoundError`; read-style queries
    return `None` or an empty result instead.
    """

    def __init__(
        self,
        storage: StateStorage,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.storage = storage
        self._clock = clock or _utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _now_iso(self) -> str:
        return _to_iso(self._now())

    # ------------------------------------------------------------------
    # Bulk access
    # ------------------------------------------------------------------

    def load(self) -> dict[str, PipelineRecord]:
        raw = self.storage.load()
        return {
            task_id: PipelineRecord.from_dict(data)
            for task_id, data in raw.items()
            if isinstance(data, dict)
        }

    def save(self, records: dict[str, PipelineRecord]) -> None:
        with self.storage.transaction():
            self.storage.save({task_id: record.to_dict() for task_id, record in records.items()})

    def get(self, task_id: str) -> Optional[PipelineRecord]:
        data = self.storage.load().get(task_id)
        if not isinstance(data, dict):
            return None
        return PipelineRecord.from_dict(data)

    def _mutate(self, task_id: str, mutator: Mutator) -> PipelineRecord:
        with self.storage.transaction():
            raw = self.storage.load()
            data = raw.get(task_id)
            if not isinstance(data, dict):
                raise PipelineNotFoundError(task_id)
            record = PipelineRecord.from_dict(data)
            if not mutator(record, self._now_iso()):
                return record
            record.version += 1
            raw[task_id] = record.to_dict()
            self.storage.save(raw)
            return record

    @staticmethod
    def _skip_terminal(record: PipelineRecord, operation: str) -> bool:
        if record.is_terminal:
            logger.debug(
                "Ignoring {} on terminal pipeline: task={} status={}",
                operation,
                record.task_id,
                record.status,
            )
            return True
        return False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(
        self,
        task_id: str,
        seed: Optional[dict[str, Any]] = None,
        *,
        overwrite: bool = False,
    ) -> PipelineRecord:
        """Create the record for a newly detected task.

        An existing record is only replaced when `overwrite=True`; otherwise
        `PipelineExistsError` is raised so the history of a retried task is
        never dropped by accident.
        """
        seed = dict(seed or {})
        with self.storage.transaction():
            raw = self.storage.load()
            existed = task_id in raw
            if existed and not overwrite:
                raise PipelineExistsError(task_id)
            now = self._now_iso()
            record = PipelineRecord(
                task_id=task_id,
                task_name=str(seed.get("name") or seed.get("title") or ""),
                current_stage=PipelineStage.DETECTED.value,
                status=PipelineStatus.IN_PROGRESS.value,
                created_at=now,
                updated_at=now,
                stages=[
                    StageEntry(
                        name="detection",
                        stage=PipelineStage.DETECTED.value,
                        status=PipelineStatus.COMPLETED.value,
                        started_at=now,
                        completed_at=now,
                        duration=0,
                    )
                ],
                metadata=default_metadata(),
                errors=[],
                last_heartbeat=now,
                version=1,
            )
            raw[task_id] = record.to_dict()
            self.storage.save(raw)
        if existed:
            logger.warning("Overwrote existing pipeline: task={}", task_id)
        logger.info("Initialized pipeline: task={} name={}", task_id, record.task_name)
        return record

    def update_stage(
        self,
        task_id: str,
        stage: StageId,
        patch: Optional[dict[str, Any]] = None,
    ) -> PipelineRecord:
        key = stage_value(stage)
        patch = dict(patch or {})

        def mutate(record: PipelineRecord, now: str) -> bool:
            if self._skip_terminal(record, "update_stage"):
                return False
            entry = record.find_stage(key)
            if entry is None:
                entry = StageEntry(name=str(patch.get("name") or key), stage=key)
                record.stages.append(entry)
            entry.merge(patch)
            entry.status = PipelineStatus.IN_PROGRESS.value
            entry.started_at = now
            entry.completed_at = None
            entry.duration = None
            entry.error = None
            record.current_stage = key
            record.updated_at = now
            return True

        return self._mutate(task_id, mutate)

    def complete_stage(
        self,
        task_id: str,
        stage: StageId,
        result: Optional[dict[str, Any]] = None,
    ) -> PipelineRecord:
        key = stage_value(stage)

        def mutate(record: PipelineRecord, now: str) -> bool:
            if self._skip_terminal(record, "complete_stage"):
                return False
            entry = record.find_stage(key)
            if entry is None:
                logger.warning("complete_stage for unknown stage: task={} stage={}", task_id, key)
            else:
                entry.merge(result)
                entry.status = PipelineStatus.COMPLETED.value
                entry.completed_at = now
                entry.duration = _ms_between(entry.started_at, now)
                entry.error = None
            record.updated_at = now
            return True

        return self._mutate(task_id, mutate)

    def fail_stage(self, task_id: str, stage: StageId, error: ErrorLike) -> PipelineRecord:
        key = stage_value(stage)
        message = _error_message(error)

        def mutate(record: PipelineRecord, now: str) -> bool:
            if self._skip_terminal(record, "fail_stage"):
                return False
            entry = record.find_stage(key)
            if entry is not None:
                entry.status = PipelineStatus.FAILED.value
                entry.completed_at = now
                entry.duration = _ms_between(entry.started_at, now)
                entry.error = message
            record.errors.append(ErrorEntry(stage=key, error=message, timestamp=now))
            record.updated_at = now
            return True

        return self._mutate(task_id, mutate)

    def update_metadata(self, task_id: str, partial: dict[str, Any]) -> PipelineRecord:
        def mutate(record: PipelineRecord, now: str) -> bool:
            record.metadata.update(dict(partial))
            record.updated_at = now
            return True

        return self._mutate(task_id, mutate)

    def complete(self, task_id: str, result: Optional[dict[str, Any]] = None) -> PipelineRecord:
        def mutate(record: PipelineRecord, now: str) -> bool:
            if self._skip_terminal(record, "complete"):
                return False
            record.status = PipelineStatus.COMPLETED.value
            record.current_stage = PipelineStage.COMPLETED.value
            record.completed_at = now
            record.total_duration = max(0, _ms_between(record.created_at, now) or 0)
            record.metadata.update(dict(result or {}))
            record.updated_at = now
            logger.info("Pipeline completed: task={} duration_ms={}", task_id, record.total_duration)
            return True

        return self._mutate(task_id, mutate)

    def fail(
        self,
        task_id: str,
        error: ErrorLike,
        reason: Optional[str] = None,
    ) -> PipelineRecord:
        message = _error_message(error)
        if reason:
            message = f"{reason}: {message}"

        def mutate(record: PipelineRecord, now: str) -> bool:
            if self._skip_terminal(record, "fail"):
                return False
            active = record.current_stage
            entry = record.find_stage(active)
            if entry is not None and entry.status == PipelineStatus.IN_PROGRESS.value:
                entry.status = PipelineStatus.FAILED.value
                entry.completed_at = now
                entry.duration = _ms_between(entry.started_at, now)
                entry.error = message
            record.status = PipelineStatus.FAILED.value
            record.current_stage = PipelineStage.FAILED.value
            record.failed_at = now
            record.errors.append(ErrorEntry(stage=active, error=message, timestamp=now))
            record.updated_at = now
            logger.warning("Pipeline failed: task={} stage={} error={}", task_id, active, message)
            return True

        return self._mutate(task_id, mutate)

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    def update_heartbeat(self, task_id: str) -> Optional[PipelineRecord]:
        """Refresh `last_heartbeat`; returns None when the task is unknown."""

        def mutate(record: PipelineRecord, now: str) -> bool:
            if record.is_terminal:
                return False
            previous = _parse_iso(record.last_heartbeat)
            current = _parse_iso(now)
            if previous is not None and current is not None and current < previous:
                return False
            record.last_heartbeat = now
            record.updated_at = now
            return True

        try:
            return self._mutate(task_id, mutate)
        except PipelineNotFoundError:
            return None

    def find_stale_tasks(self, threshold_ms: int) -> list[StaleTaskInfo]:
        """Return in-progress tasks whose heartbeat is older than `threshold_ms`.

        Records without a heartbeat are never stale: nothing claims to be
        monitoring them.
        """
        now = self._now()
        stale: list[StaleTaskInfo] = []
        for record in self.load().values():
            if record.status != PipelineStatus.IN_PROGRESS.value:
                continue
            heartbeat = _parse_iso(record.last_heartbeat)
            if heartbeat is None:
                continue
            age_ms = int((now - heartbeat).total_seconds() * 1000)
            if age_ms > threshold_ms:
                stale.append(
                    StaleTaskInfo(
                        task_id=record.task_id,
                        task_name=record.task_name,
                        current_stage=record.current_stage,
                        status=record.status,
                        updated_at=record.updated_at,
                        last_heartbeat=record.last_heartbeat,
                        stale_duration_ms=age_ms,
                    )
                )
        return stale

    def recover_stale_task(self, task_id: str, mark_as_failed: bool) -> PipelineRecord:
        """Fail a stale task, or reset its active stage so a driver can re-run it."""

        def mutate(record: PipelineRecord, now: str) -> bool:
            if self._skip_terminal(record, "recover_stale_task"):
                return False
            active = record.current_stage
            entry = record.find_stage(active)
            running = entry is not None and entry.status == PipelineStatus.IN_PROGRESS.value
            if mark_as_failed:
                record.status = PipelineStatus.FAILED.value
                record.current_stage = PipelineStage.FAILED.value
                record.failed_at = now
                record.errors.append(
                    ErrorEntry(
                        stage=active,
                        error=(
                            "Task marked as failed due to stale state. "
                            f"Last updated: {record.updated_at}. Stage: {active}"
                        ),
                        timestamp=now,
                    )
                )
                if running:
                    entry.status = PipelineStatus.FAILED.value
                    entry.completed_at = now
                    entry.duration = _ms_between(entry.started_at, now)
                    entry.error = STALE_STAGE_ERROR
            else:
                if running:
                    entry.status = PipelineStatus.PENDING.value
                    entry.started_at = None
                record.errors.append(
                    ErrorEntry(
                        stage=active,
                        error=(
                            "Task recovery initiated. Stage reset from stale state. "
                            f"Last updated: {record.updated_at}"
                        ),
                        timestamp=now,
                    )
                )
                # Unmonitored until a driver resumes it and heartbeats again.
                record.last_heartbeat = None
            record.updated_at = now
            return True

        record = self._mutate(task_id, mutate)
        logger.info(
            "Recovered stale task: task={} mark_as_failed={} status={}",
            task_id,
            mark_as_failed,
            record.status,
        )
        return record

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_active(self) -> list[PipelineRecord]:
        return [r for r in self.load().values() if r.status == PipelineStatus.IN_PROGRESS.value]

    def get_summary(self, task_id: str) -> Optional[PipelineSummary]:
        record = self.get(task_id)
        if record is None:
            return None
        completed = len([s for s in record.stages if s.status == PipelineStatus.COMPLETED.value])
        progress = int(math.floor(completed / TOTAL_STAGES * 100 + 0.5))
        end = record.completed_at or record.failed_at or self._now_iso()
        duration = _ms_between(record.created_at, end) or 0
        review_iterations = record.metadata.get("reviewIterations") or 0
        return PipelineSummary(
            task_id=record.task_id,
            task_name=record.task_name,
            current_stage=record.current_stage,
            status=record.status,
            progress=progress,
            duration=duration,
            review_iterations=int(review_iterations),
            has_errors=bool(record.errors),
        )
