"""Progress comments posted back to whatever tracks the task."""

from __future__ import annotations

import threading
from typing import Protocol

from loguru import logger


class CommentSink(Protocol):
    def post(self, task_id: str, text: str) -> None:
        ...


class NullCommentSink:
    """Drop comments; used when no tracker is wired in."""

    def post(self, task_id: str, text: str) -> None:
        logger.debug("Comment for task {} dropped ({} chars)", task_id, len(text))


class RecordingCommentSink:
    """Keep comments in memory, keyed by task id."""

    def __init__(self) -> None:
        self.comments: dict[str, list[str]] = {}
        self._lock = threading.Lock()

    def post(self, task_id: str, text: str) -> None:
        with self._lock:
            self.comments.setdefault(task_id, []).append(text)

    def for_task(self, task_id: str) -> list[str]:
        with self._lock:
            return list(self.comments.get(task_id, []))


def post_comment(sink: CommentSink, task_id: str, text: str) -> bool:
    """Deliver a comment; delivery problems never fail the caller."""
    try:
        sink.post(task_id, text)
    except Exception as exc:
        logger.warning("Failed to post comment for task {}: {}", task_id, exc)
        return False
    return True


def verification_passed_comment(
    tests_run: int,
    tests_passed: int,
    tests_failed: int,
    fix_attempts: int,
) -> str:
    attempts = f"\nFix attempts: {fix_attempts} (auto-fixed)" if fix_attempts > 0 else ""
    return (
        "Verification Passed\n\n"
        "Build and tests completed successfully.\n\n"
        f"Tests run: {tests_run}\n"
        f"Tests passed: {tests_passed}\n"
        f"Tests failed: {tests_failed}{attempts}"
    )


def verification_failed_comment(error: str, fix_attempts: int) -> str:
    return f"Verification Failed\n\n{error} after {fix_attempts} fix attempt(s)."


def tests_generated_comment(test_files: list[str]) -> str:
    if not test_files:
        return "Test generation finished without new test files."
    listing = "\n".join(f"- {path}" for path in test_files)
    return f"Generated {len(test_files)} test file(s):\n{listing}"


def watchdog_failed_comment(stale_minutes: int) -> str:
    return f"Task stopped by watchdog: no heartbeat for {stale_minutes} minutes."
