"""Build and test verification with a bounded corrective-worker retry loop.

The stage runs the build commands, then the test command, in the task's
working path.  Any failure (non-zero exit, timeout, or output that betrays a
failure despite exit 0) hands the captured output to the corrective worker and
starts over from the build.  `fix_attempts` is shared by build and test
failures; once it reaches `max_fix_attempts` the next failure is terminal.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from loguru import logger

from ..comments import post_comment, verification_failed_comment, verification_passed_comment
from ..constants import (
    ERROR_TYPE_BUILD_FAILED,
    ERROR_TYPE_TESTS_FAILED,
    OPTIONAL_BUILD_COMMANDS,
    PROMPT_OUTPUT_MAX_CHARS,
)
from ..git_utils import _git_commit_all, _git_is_repo, _git_push
from ..logging_utils import output_excerpt
from ..models import PipelineStage
from ..prompts import _build_verify_fix_prompt
from ..test_patterns import format_test_patterns, load_test_patterns
from ..utils import _truncate
from ..worker import CommandRunner, CorrectiveWorker, _run_command
from .base import Stage, StageContext, StageResult


class VerifyState(str, Enum):
    RUNNING_BUILD = "running-build"
    RUNNING_TESTS = "running-tests"
    INVOKING_WORKER = "invoking-worker"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class CheckResult:
    success: bool
    output: str
    exit_code: int
    log_path: Optional[str] = None


@dataclass(frozen=True)
class TestStats:
    __test__ = False

    total: int = 0
    passed: int = 0
    failed: int = 0


_ERROR_WORD = re.compile(r"\berror\b", re.IGNORECASE)
_JEST_TESTS_LINE = re.compile(r"^\s*Tests:\s+(.*)$", re.MULTILINE)
_COUNT = re.compile(r"(\d+)\s+(passed|failed|skipped|todo|total)")
_PYTEST_SUMMARY = re.compile(r"^=*\s*(.*?\b(?:passed|failed)\b.*?)\s+in\s+[\d.]+s", re.MULTILINE)


def output_reports_error(output: str) -> bool:
    """True when build output mentions the word `error` despite a clean exit."""
    return bool(_ERROR_WORD.search(output or ""))


def output_reports_test_failures(output: str) -> bool:
    """Detect failing test runs that still exited 0."""
    if not output:
        return False
    if "FAIL" in output or "Test Suites: 0 passed" in output or "Tests:       0 passed" in output:
        if (
            "Test Suites:" in output
            and "Test Suites: 0 failed" not in output
            and "failed" in output
        ):
            return True
    return parse_test_output(output).failed > 0


def parse_test_output(output: str) -> TestStats:
    """Extract pass/fail/total counts from Jest or pytest summaries.

    Unknown formats yield zero counts; they never fail the stage.
    """
    match = None
    for match in _JEST_TESTS_LINE.finditer(output or ""):
        pass
    if match is not None:
        counts = {kind: int(num) for num, kind in _COUNT.findall(match.group(1))}
        passed = counts.get("passed", 0)
        failed = counts.get("failed", 0)
        total = counts.get("total", passed + failed + counts.get("skipped", 0))
        return TestStats(total=total, passed=passed, failed=failed)

    summary = None
    for summary in _PYTEST_SUMMARY.finditer(output or ""):
        pass
    if summary is not None:
        counts = {kind: int(num) for num, kind in _COUNT.findall(summary.group(1))}
        passed = counts.get("passed", 0)
        failed = counts.get("failed", 0)
        return TestStats(total=passed + failed + counts.get("skipped", 0), passed=passed, failed=failed)

    return TestStats()


class VerificationStage(Stage):
    """Verify the task's changes build and pass tests, repairing them if not."""

    requires = (PipelineStage.IMPLEMENTING,)

    def __init__(
        self,
        worker: CorrectiveWorker,
        *,
        command_runner: CommandRunner = _run_command,
        max_fix_attempts: Optional[int] = None,
        build_commands: Optional[tuple[str, ...]] = None,
        test_command: Optional[str] = None,
        optional_commands: tuple[str, ...] = OPTIONAL_BUILD_COMMANDS,
        auto_commit: bool = True,
    ) -> None:
        self.worker = worker
        self.command_runner = command_runner
        self.max_fix_attempts = max_fix_attempts
        self.build_commands = build_commands
        self.test_command = test_command
        self.optional_commands = optional_commands
        self.auto_commit = auto_commit

    @property
    def stage_id(self) -> PipelineStage:
        return PipelineStage.VERIFYING

    @property
    def display_name(self) -> str:
        return "Build & Test Verification"

    def _transition(self, ctx: StageContext, state: VerifyState, attempt: int) -> VerifyState:
        logger.debug("Verification state: task={} attempt={} state={}", ctx.task_id, attempt, state.value)
        return state

    def execute(self, ctx: StageContext) -> StageResult:
        settings = ctx.settings
        max_attempts = self.max_fix_attempts if self.max_fix_attempts is not None else settings.max_fix_attempts
        fix_attempts = 0

        while True:
            attempt = fix_attempts + 1
            if fix_attempts == 0:
                logger.info("Running build and tests: task={}", ctx.task_id)
            else:
                logger.info(
                    "Verification attempt {}/{}: task={}", attempt, max_attempts + 1, ctx.task_id
                )

            self._transition(ctx, VerifyState.RUNNING_BUILD, attempt)
            build = self._run_build(ctx, attempt)
            if not build.success:
                logger.warning("Build failed:\n{}", output_excerpt(build.output))
                if fix_attempts >= max_attempts:
                    return self._failure(
                        ctx,
                        "Build verification failed",
                        ERROR_TYPE_BUILD_FAILED,
                        fix_attempts,
                        buildPassed=False,
                        buildError=_truncate(build.output, PROMPT_OUTPUT_MAX_CHARS),
                        logPath=build.log_path,
                    )
                self._transition(ctx, VerifyState.INVOKING_WORKER, attempt)
                self._invoke_worker(ctx, attempt, build_error=build.output)
                fix_attempts += 1
                continue
            logger.info("Build passed: task={}", ctx.task_id)

            self._transition(ctx, VerifyState.RUNNING_TESTS, attempt)
            tests = self._run_tests(ctx, attempt)
            if not tests.success:
                logger.warning("Tests failed:\n{}", output_excerpt(tests.output))
                if fix_attempts >= max_attempts:
                    return self._failure(
                        ctx,
                        "Test verification failed",
                        ERROR_TYPE_TESTS_FAILED,
                        fix_attempts,
                        buildPassed=True,
                        testsPassed=False,
                        testError=_truncate(tests.output, PROMPT_OUTPUT_MAX_CHARS),
                        logPath=tests.log_path,
                    )
                self._transition(ctx, VerifyState.INVOKING_WORKER, attempt)
                self._invoke_worker(ctx, attempt, test_error=tests.output)
                fix_attempts += 1
                continue

            state = self._transition(ctx, VerifyState.SUCCEEDED, attempt)
            stats = parse_test_output(tests.output)
            logger.info(
                "All tests passed: task={} tests_run={} fix_attempts={}",
                ctx.task_id,
                stats.total,
                fix_attempts,
            )
            post_comment(
                ctx.comments,
                ctx.task_id,
                verification_passed_comment(stats.total, stats.passed, stats.failed, fix_attempts),
            )
            return StageResult.ok(
                buildPassed=True,
                testsPassed=True,
                testsRun=stats.total,
                testsFailed=stats.failed,
                fixAttempts=fix_attempts,
                state=state.value,
            )

    def _failure(
        self,
        ctx: StageContext,
        error: str,
        error_type: str,
        fix_attempts: int,
        **data: object,
    ) -> StageResult:
        state = self._transition(ctx, VerifyState.FAILED, fix_attempts + 1)
        logger.error("{}: task={} fix_attempts={}", error, ctx.task_id, fix_attempts)
        post_comment(ctx.comments, ctx.task_id, verification_failed_comment(error, fix_attempts))
        return StageResult.failure(error, error_type, fixAttempts=fix_attempts, state=state.value, **data)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _run_build(self, ctx: StageContext, attempt: int) -> CheckResult:
        commands = self.build_commands if self.build_commands is not None else ctx.settings.build_commands
        log_dir = ctx.log_dir()
        outputs: list[str] = []
        last_log: Optional[str] = None
        for index, command in enumerate(commands, start=1):
            log_path = log_dir / f"verify-build-{attempt}-{index}.log"
            result = self.command_runner(
                command,
                ctx.working_path,
                log_path,
                timeout_seconds=ctx.settings.command_timeout_seconds,
            )
            last_log = result.log_path
            if not result.succeeded:
                if command in self.optional_commands and "Missing script" in result.output:
                    logger.debug("Skipping optional build command without a script: {}", command)
                    continue
                if result.timed_out:
                    logger.warning("Build command timed out: {}", command)
                return CheckResult(False, result.output, result.exit_code, result.log_path)
            if output_reports_error(result.output):
                return CheckResult(False, result.output, 1, result.log_path)
            outputs.append(result.output)
        return CheckResult(True, "\n".join(outputs) or "Build successful", 0, last_log)

    def _run_tests(self, ctx: StageContext, attempt: int) -> CheckResult:
        command = self.test_command or ctx.settings.test_command
        log_path = ctx.log_dir() / f"verify-tests-{attempt}.log"
        result = self.command_runner(
            command,
            ctx.working_path,
            log_path,
            timeout_seconds=ctx.settings.command_timeout_seconds,
        )
        if not result.succeeded:
            return CheckResult(False, result.output, result.exit_code, result.log_path)
        if output_reports_test_failures(result.output):
            return CheckResult(False, result.output, 1, result.log_path)
        return CheckResult(True, result.output, 0, result.log_path)

    # ------------------------------------------------------------------
    # Corrective worker
    # ------------------------------------------------------------------

    def _invoke_worker(
        self,
        ctx: StageContext,
        attempt: int,
        *,
        build_error: Optional[str] = None,
        test_error: Optional[str] = None,
    ) -> None:
        working = ctx.working_path
        patterns = format_test_patterns(load_test_patterns(working))
        prompt = _build_verify_fix_prompt(
            ctx.task_id,
            ctx.branch,
            working,
            is_worktree=ctx.is_worktree,
            build_error=build_error,
            test_error=test_error,
            test_patterns=patterns,
            build_commands=self.build_commands if self.build_commands is not None else ctx.settings.build_commands,
            test_command=self.test_command or ctx.settings.test_command,
        )
        log_path = ctx.log_dir() / f"verify-fix-{attempt}.log"
        logger.info("Invoking corrective worker: task={} log={}", ctx.task_id, log_path)
        result = self.worker.run(
            prompt,
            cwd=working,
            timeout_seconds=ctx.settings.worker_timeout_seconds,
            log_path=log_path,
            on_tick=ctx.heartbeat,
        )
        if result.timed_out:
            logger.error("Corrective worker timed out: task={} log={}", ctx.task_id, result.log_path)
        elif result.exit_code != 0:
            # Partial fixes still count; the next build/test run decides.
            logger.warning("Corrective worker exited with code {}: task={}", result.exit_code, ctx.task_id)
        else:
            logger.info("Corrective worker finished: task={}", ctx.task_id)
        if self.auto_commit:
            self._auto_commit(ctx, working)

    def _auto_commit(self, ctx: StageContext, working: Path) -> None:
        if not _git_is_repo(working):
            return
        message = f"fix: Fix build/test errors (#{ctx.task_id})"
        if not _git_commit_all(working, message):
            return
        logger.info("Committed corrective worker changes: task={}", ctx.task_id)
        if _git_push(working, ctx.branch):
            logger.info("Pushed {} for task {}", ctx.branch, ctx.task_id)
