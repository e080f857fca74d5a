from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from task_pipeline_runner.comments import RecordingCommentSink
from task_pipeline_runner.config import PipelineSettings
from task_pipeline_runner.models import PipelineStage, PipelineStatus
from task_pipeline_runner.stages import StageContext, StageRunner, VerificationStage, parse_test_output
from task_pipeline_runner.stages.verification import output_reports_error, output_reports_test_failures
from task_pipeline_runner.storage import MemoryStorage, PipelineRepository
from task_pipeline_runner.worker import CommandResult, WorkerRunResult

BUILD = "make build"
TEST = "make test"
JEST_OK = "Test Suites: 1 passed, 1 total\nTests:       3 passed, 3 total\n"


class ScriptedRunner:
    """Replay (exit_code, output) pairs per command; the last pair repeats."""

    def __init__(self, script: dict[str, list[tuple[int, str]]]) -> None:
        self.script = {cmd: list(steps) for cmd, steps in script.items()}
        self.calls: list[str] = []

    def __call__(
        self,
        command: str,
        project_dir: Path,
        log_path: Path,
        *,
        timeout_seconds: Optional[float] = None,
    ) -> CommandResult:
        self.calls.append(command)
        steps = self.script[command]
        exit_code, output = steps.pop(0) if len(steps) > 1 else steps[0]
        return CommandResult(
            command=command,
            exit_code=exit_code,
            output=output,
            log_path=str(log_path),
            timed_out=exit_code == 124,
        )


class FakeWorker:
    def __init__(self, exit_code: int = 0) -> None:
        self.exit_code = exit_code
        self.prompts: list[str] = []

    def run(
        self,
        prompt: str,
        *,
        cwd: Path,
        timeout_seconds: float,
        log_path: Path,
        on_tick: Optional[Callable[[], None]] = None,
    ) -> WorkerRunResult:
        self.prompts.append(prompt)
        if on_tick:
            on_tick()
        return WorkerRunResult(command="fake-worker", exit_code=self.exit_code, log_path=str(log_path))


def _ctx(tmp_path: Path, *, implemented: bool = True) -> StageContext:
    work = tmp_path / "repo"
    work.mkdir(exist_ok=True)
    repo = PipelineRepository(MemoryStorage())
    repo.init("t1", {"name": "Add login"})
    if implemented:
        repo.update_stage("t1", PipelineStage.IMPLEMENTING)
        repo.complete_stage("t1", PipelineStage.IMPLEMENTING)
    return StageContext(
        task_id="t1",
        task_name="Add login",
        repo_path=work,
        repository=repo,
        settings=PipelineSettings(),
        comments=RecordingCommentSink(),
        artifacts_dir=tmp_path / "artifacts",
    )


def _stage(runner: ScriptedRunner, worker: FakeWorker, max_fix_attempts: int = 3, **kwargs) -> VerificationStage:
    kwargs.setdefault("build_commands", (BUILD,))
    kwargs.setdefault("test_command", TEST)
    return VerificationStage(
        worker,
        command_runner=runner,
        max_fix_attempts=max_fix_attempts,
        auto_commit=False,
        **kwargs,
    )


def test_build_fixed_on_third_run(tmp_path: Path) -> None:
    """Two failed builds cost two worker calls, then the stage passes."""
    runner = ScriptedRunner(
        {
            BUILD: [(1, "Build error: missing import"), (1, "error TS2304"), (0, "compiled")],
            TEST: [(0, JEST_OK)],
        }
    )
    worker = FakeWorker()
    ctx = _ctx(tmp_path)

    result = _stage(runner, worker).execute(ctx)

    assert result.success
    assert len(worker.prompts) == 2
    assert result.data == {
        "buildPassed": True,
        "testsPassed": True,
        "testsRun": 3,
        "testsFailed": 0,
        "fixAttempts": 2,
        "state": "succeeded",
    }
    assert runner.calls == [BUILD, BUILD, BUILD, TEST]
    comments = ctx.comments.for_task("t1")
    assert comments[-1].startswith("Verification Passed")
    assert "Fix attempts: 2" in comments[-1]


def test_build_failure_exhausts_fix_budget(tmp_path: Path) -> None:
    """With max_fix_attempts=2 the worker runs twice and the third failure is final."""
    runner = ScriptedRunner({BUILD: [(2, "fatal: compile failed")], TEST: [(0, JEST_OK)]})
    worker = FakeWorker()
    ctx = _ctx(tmp_path)

    result = _stage(runner, worker, max_fix_attempts=2).execute(ctx)

    assert not result.success
    assert result.error == "Build verification failed"
    assert result.error_type == "build_failed"
    assert result.data["fixAttempts"] == 2
    assert result.data["buildPassed"] is False
    assert result.data["buildError"] == "fatal: compile failed"
    assert result.data["state"] == "failed"
    assert len(worker.prompts) == 2
    assert runner.calls == [BUILD, BUILD, BUILD]
    assert ctx.comments.for_task("t1")[-1].startswith("Verification Failed")


def test_build_and_test_failures_share_fix_budget(tmp_path: Path) -> None:
    """Build and test fixes draw on one budget; the last test failure is final."""
    runner = ScriptedRunner(
        {
            BUILD: [(1, "error: cannot resolve module"), (0, "compiled")],
            TEST: [(1, "FAIL src/login.test.ts\nTests:       1 failed, 1 total\n")],
        }
    )
    worker = FakeWorker()

    result = _stage(runner, worker, max_fix_attempts=3).execute(_ctx(tmp_path))

    assert not result.success
    assert result.error_type == "tests_failed"
    assert result.data["fixAttempts"] == 3
    assert result.data["state"] == "failed"
    assert "FAIL src/login.test.ts" in result.data["testError"]
    assert runner.calls == [BUILD, BUILD, TEST, BUILD, TEST, BUILD, TEST]
    assert len(worker.prompts) == 3
    assert "BUILD ERRORS:" in worker.prompts[0]
    assert "TEST ERRORS:" in worker.prompts[1]


def test_zero_exit_with_error_word_is_a_failure(tmp_path: Path) -> None:
    """Build output containing `error` fails the build even on exit 0."""
    runner = ScriptedRunner(
        {BUILD: [(0, "src/a.ts(3,1): error TS2304: Cannot find name"), (0, "clean")], TEST: [(0, JEST_OK)]}
    )
    worker = FakeWorker()

    result = _stage(runner, worker, max_fix_attempts=1).execute(_ctx(tmp_path))

    assert result.success
    assert len(worker.prompts) == 1
    assert "BUILD ERRORS:" in worker.prompts[0]
    assert "TS2304" in worker.prompts[0]


def test_zero_errors_summary_passes(tmp_path: Path) -> None:
    """`0 errors` is not the word `error`."""
    runner = ScriptedRunner({BUILD: [(0, "Found 0 errors.")], TEST: [(0, JEST_OK)]})
    worker = FakeWorker()

    result = _stage(runner, worker).execute(_ctx(tmp_path))

    assert result.success
    assert worker.prompts == []


def test_optional_command_without_script_is_skipped(tmp_path: Path) -> None:
    """A missing optional npm script does not count as a build failure."""
    runner = ScriptedRunner(
        {
            "npm run type-check": [(1, 'npm ERR! Missing script: "type-check"')],
            "npm run build": [(0, "built")],
            TEST: [(0, JEST_OK)],
        }
    )
    worker = FakeWorker()

    result = _stage(
        runner, worker, build_commands=("npm run type-check", "npm run build")
    ).execute(_ctx(tmp_path))

    assert result.success
    assert worker.prompts == []
    assert runner.calls == ["npm run type-check", "npm run build", TEST]


def test_jest_failure_with_zero_exit(tmp_path: Path) -> None:
    """Jest FAIL lines fail the test step even when the runner exits 0."""
    output = (
        "FAIL src/login.test.ts\n"
        "Test Suites: 1 failed, 1 total\n"
        "Tests:       1 failed, 2 passed, 3 total\n"
    )
    runner = ScriptedRunner({BUILD: [(0, "compiled")], TEST: [(0, output)]})
    worker = FakeWorker()

    result = _stage(runner, worker, max_fix_attempts=0).execute(_ctx(tmp_path))

    assert not result.success
    assert result.error == "Test verification failed"
    assert result.error_type == "tests_failed"
    assert result.data["buildPassed"] is True
    assert result.data["testsPassed"] is False
    assert "FAIL src/login.test.ts" in result.data["testError"]
    assert worker.prompts == []


def test_test_timeout_is_a_failure(tmp_path: Path) -> None:
    """A timed-out test command fails like any other non-zero exit."""
    runner = ScriptedRunner({BUILD: [(0, "compiled")], TEST: [(124, "[pipeline] Command timed out after 300s")]})
    worker = FakeWorker()

    result = _stage(runner, worker, max_fix_attempts=1).execute(_ctx(tmp_path))

    assert not result.success
    assert result.error_type == "tests_failed"
    assert result.data["fixAttempts"] == 1
    assert "TEST ERRORS:" in worker.prompts[0]


def test_worker_failure_does_not_stop_the_loop(tmp_path: Path) -> None:
    """A non-zero worker exit still leads to a re-check."""
    runner = ScriptedRunner({BUILD: [(1, "broken"), (0, "compiled")], TEST: [(0, JEST_OK)]})
    worker = FakeWorker(exit_code=1)

    result = _stage(runner, worker).execute(_ctx(tmp_path))

    assert result.success
    assert result.data["fixAttempts"] == 1


def test_worker_prompt_truncates_long_output(tmp_path: Path) -> None:
    """Errors handed to the worker are capped at 2000 characters."""
    runner = ScriptedRunner({BUILD: [(1, "x" * 5000), (0, "compiled")], TEST: [(0, JEST_OK)]})
    worker = FakeWorker()

    _stage(runner, worker).execute(_ctx(tmp_path))

    prompt = worker.prompts[0]
    assert "x" * 2000 in prompt
    assert "x" * 2001 not in prompt
    assert "... (truncated)" in prompt


def test_worker_tick_refreshes_heartbeat(tmp_path: Path) -> None:
    """Worker progress ticks keep the task's heartbeat moving."""
    runner = ScriptedRunner({BUILD: [(1, "broken"), (0, "compiled")], TEST: [(0, JEST_OK)]})
    ctx = _ctx(tmp_path)
    before = ctx.repository.get("t1").last_heartbeat

    _stage(runner, FakeWorker()).execute(ctx)

    after = ctx.repository.get("t1").last_heartbeat
    assert after is not None and before is not None
    assert after >= before


def test_missing_implementation_is_a_dependency_failure(tmp_path: Path) -> None:
    """Verification refuses to start before implementing has completed."""
    runner = ScriptedRunner({BUILD: [(0, "compiled")], TEST: [(0, JEST_OK)]})
    ctx = _ctx(tmp_path, implemented=False)

    result = StageRunner(heartbeat=False).run(_stage(runner, FakeWorker()), ctx)

    assert not result.success
    assert result.error_type == "dependency_not_satisfied"
    assert runner.calls == []
    record = ctx.repository.get("t1")
    assert record.stage_status(PipelineStage.VERIFYING) is None


def test_runner_records_verification_outcome(tmp_path: Path) -> None:
    """Through the runner, a pass completes the stage entry with its data."""
    runner = ScriptedRunner({BUILD: [(0, "compiled")], TEST: [(0, JEST_OK)]})
    ctx = _ctx(tmp_path)

    result = StageRunner(heartbeat=False).run(_stage(runner, FakeWorker()), ctx)

    assert result.success
    entry = ctx.repository.get("t1").find_stage(PipelineStage.VERIFYING)
    assert entry is not None
    assert entry.status == PipelineStatus.COMPLETED.value
    assert entry.name == "Build & Test Verification"
    assert entry.extra["testsRun"] == 3


def test_parse_test_output_formats() -> None:
    """Jest and pytest summaries are parsed; anything else yields zeros."""
    jest = parse_test_output("Tests:       1 failed, 4 passed, 5 total\n")
    assert (jest.total, jest.passed, jest.failed) == (5, 4, 1)

    pytest_stats = parse_test_output("===== 2 failed, 7 passed, 1 skipped in 0.52s =====\n")
    assert (pytest_stats.total, pytest_stats.passed, pytest_stats.failed) == (10, 7, 2)

    unknown = parse_test_output("ok  \tgithub.com/acme/app\t0.01s\n")
    assert (unknown.total, unknown.passed, unknown.failed) == (0, 0, 0)


def test_output_heuristics() -> None:
    """Error and failure detection on zero-exit output."""
    assert output_reports_error("ERROR in ./src/index.ts")
    assert not output_reports_error("Found 0 errors. Watching for file changes.")
    assert output_reports_test_failures("===== 1 failed, 3 passed in 1.00s =====")
    assert not output_reports_test_failures(JEST_OK)
