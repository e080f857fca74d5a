"""Background sweep that fails tasks whose heartbeat has gone quiet."""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Optional

from loguru import logger

from .comments import CommentSink, NullCommentSink, post_comment, watchdog_failed_comment
from .config import PipelineSettings
from .constants import DEFAULT_STALE_THRESHOLD_MS, DEFAULT_WATCHDOG_INTERVAL_MS, WATCHDOG_REASON
from .errors import PipelineError
from .models import StaleTaskInfo
from .storage.repository import PipelineRepository


@dataclass(frozen=True)
class WatchdogConfig:
    enabled: bool = True
    check_interval_ms: int = DEFAULT_WATCHDOG_INTERVAL_MS
    stale_threshold_ms: int = DEFAULT_STALE_THRESHOLD_MS

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "WatchdogConfig":
        return cls(
            enabled=settings.watchdog_enabled,
            check_interval_ms=settings.watchdog_interval_ms,
            stale_threshold_ms=settings.stale_threshold_ms,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "enabled": self.enabled,
            "checkIntervalMs": self.check_interval_ms,
            "staleThresholdMs": self.stale_threshold_ms,
        }


def unresponsive_message(stale_minutes: int) -> str:
    return f"Task became unresponsive (no heartbeat for {stale_minutes} minutes)"


class WatchdogService:
    """Periodically fail in-progress tasks with an expired heartbeat.

    The sweep runs on a daemon thread that waits on an `Event`, so `stop()`
    interrupts the wait instead of sleeping out the interval. One bad sweep is
    logged and the next tick runs as usual.
    """

    def __init__(
        self,
        repository: PipelineRepository,
        config: Optional[WatchdogConfig] = None,
        *,
        comments: Optional[CommentSink] = None,
    ) -> None:
        self.repository = repository
        self.config = config or WatchdogConfig()
        self.comments = comments or NullCommentSink()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self) -> None:
        if not self.config.enabled:
            logger.info("Watchdog service is disabled")
            return
        with self._lock:
            if self._thread is not None:
                logger.warning("Watchdog service is already running")
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, name="pipeline-watchdog", daemon=True)
            self._thread.start()
        logger.info(
            "Watchdog started (checking every {}s, stale threshold: {}min)",
            self.config.check_interval_ms / 1000,
            self.config.stale_threshold_ms / 60000,
        )

    def stop(self) -> None:
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._stop.set()
            self._thread = None
        if thread is not threading.current_thread():
            thread.join(timeout=5)
        logger.info("Watchdog service stopped")

    def is_active(self) -> bool:
        with self._lock:
            return self._thread is not None

    def get_config(self) -> WatchdogConfig:
        return replace(self.config)

    def _loop(self) -> None:
        interval = self.config.check_interval_ms / 1000
        while not self._stop.wait(interval):
            try:
                self.check_stale_tasks()
            except Exception:
                logger.exception("Watchdog check failed")

    def check_stale_tasks(self) -> list[str]:
        """Run one sweep and return the ids of the tasks it failed."""
        stale = self.repository.find_stale_tasks(self.config.stale_threshold_ms)
        if not stale:
            return []
        logger.warning(
            "Found {} stale task(s): {}",
            len(stale),
            ", ".join(info.task_id for info in stale),
        )
        failed: list[str] = []
        for info in stale:
            if self._fail_stale_task(info):
                failed.append(info.task_id)
        return failed

    def _fail_stale_task(self, info: StaleTaskInfo) -> bool:
        stale_minutes = info.stale_duration_ms // 60000
        logger.warning(
            "Failing stale task: task={} last_heartbeat={} stale_minutes={}",
            info.task_id,
            info.last_heartbeat,
            stale_minutes,
        )
        try:
            self.repository.fail(info.task_id, unresponsive_message(stale_minutes), WATCHDOG_REASON)
        except PipelineError as exc:
            logger.error("Failed to mark task {} as failed: {}", info.task_id, exc)
            return False
        post_comment(self.comments, info.task_id, watchdog_failed_comment(stale_minutes))
        return True
