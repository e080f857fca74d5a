from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Callable, Optional

from task_pipeline_runner.comments import RecordingCommentSink
from task_pipeline_runner.models import PipelineStage, PipelineStatus
from task_pipeline_runner.stages import StageContext, StageRunner, TestGenerationStage
from task_pipeline_runner.stages.test_generation import is_source_file
from task_pipeline_runner.storage import MemoryStorage, PipelineRepository
from task_pipeline_runner.worker import WorkerRunResult


def _git_init(path: Path) -> None:
    """Initialize a git repo on `main` with an initial commit."""
    path.mkdir(parents=True, exist_ok=True)
    subprocess.run(["git", "init"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "user.email", "test@test.com"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "config", "user.name", "Test"], cwd=path, check=True, capture_output=True, text=True)
    (path / "README.md").write_text("# init\n")
    subprocess.run(["git", "add", "-A"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "commit", "-m", "initial"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "branch", "-M", "main"], cwd=path, check=True, capture_output=True, text=True)


def _commit_feature(path: Path) -> None:
    subprocess.run(["git", "checkout", "-b", "task-t1"], cwd=path, check=True, capture_output=True, text=True)
    (path / "src").mkdir()
    (path / "src" / "app.py").write_text("def greet(name):\n    return f'hi {name}'\n")
    (path / "config.py").write_text("DEBUG = True\n")
    subprocess.run(["git", "add", "-A"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "commit", "-m", "feature"], cwd=path, check=True, capture_output=True, text=True)


class WritingWorker:
    """Write a test file into the checkout, optionally committing it."""

    def __init__(self, *, commit: bool = False, exit_code: int = 0) -> None:
        self.commit = commit
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
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text("worker output\nsomething went wrong\n" if self.exit_code else "done\n")
        if self.exit_code == 0:
            (cwd / "tests").mkdir(exist_ok=True)
            (cwd / "tests" / "test_app.py").write_text(
                "from src.app import greet\n\n\ndef test_greet():\n    assert greet('a') == 'hi a'\n"
            )
            if self.commit:
                subprocess.run(["git", "add", "-A"], cwd=cwd, check=True, capture_output=True, text=True)
                subprocess.run(["git", "commit", "-m", "worker tests"], cwd=cwd, check=True, capture_output=True, text=True)
        return WorkerRunResult(command="fake-worker", exit_code=self.exit_code, log_path=str(log_path))


def _ctx(tmp_path: Path, work: Path) -> StageContext:
    repo = PipelineRepository(MemoryStorage())
    repo.init("t1", {"name": "Greeting"})
    repo.update_stage("t1", PipelineStage.IMPLEMENTING)
    repo.complete_stage("t1", PipelineStage.IMPLEMENTING)
    return StageContext(
        task_id="t1",
        task_name="Greeting",
        repo_path=work,
        repository=repo,
        description="Say hello",
        comments=RecordingCommentSink(),
        artifacts_dir=tmp_path / "artifacts",
    )


def _git_log_subjects(path: Path) -> list[str]:
    out = subprocess.run(["git", "log", "--format=%s"], cwd=path, check=True, capture_output=True, text=True)
    return out.stdout.splitlines()


def test_generates_and_commits_tests(tmp_path: Path) -> None:
    """New test files left by the worker are reported and committed."""
    work = tmp_path / "repo"
    _git_init(work)
    _commit_feature(work)
    worker = WritingWorker()
    ctx = _ctx(tmp_path, work)

    result = TestGenerationStage(worker).execute(ctx)

    assert result.success
    assert result.data["testsCreated"] == 1
    assert result.data["testFiles"] == ["tests/test_app.py"]
    assert "- src/app.py" in worker.prompts[0]
    assert "config.py" not in worker.prompts[0].split("Changed source files:")[1].split("Requirements:")[0]
    assert _git_log_subjects(work)[0] == "test: add tests for Greeting (#t1)"
    assert "tests/test_app.py" in ctx.comments.for_task("t1")[0]


def test_detects_tests_committed_by_worker(tmp_path: Path) -> None:
    """Tests the worker committed itself still count."""
    work = tmp_path / "repo"
    _git_init(work)
    _commit_feature(work)

    result = TestGenerationStage(WritingWorker(commit=True), auto_commit=False).execute(_ctx(tmp_path, work))

    assert result.success
    assert result.data["testFiles"] == ["tests/test_app.py"]


def test_no_changed_sources_skips_worker(tmp_path: Path) -> None:
    """Nothing changed relative to the base branch means nothing to test."""
    work = tmp_path / "repo"
    _git_init(work)
    worker = WritingWorker()

    result = TestGenerationStage(worker).execute(_ctx(tmp_path, work))

    assert result.success
    assert result.data == {"testsCreated": 0, "testFiles": []}
    assert worker.prompts == []


def test_worker_failure_reports_log_tail(tmp_path: Path) -> None:
    """A failing worker fails the stage with the end of its log."""
    work = tmp_path / "repo"
    _git_init(work)
    _commit_feature(work)

    result = TestGenerationStage(WritingWorker(exit_code=2)).execute(_ctx(tmp_path, work))

    assert not result.success
    assert result.error == "Test generation exited with code 2"
    assert result.error_type == "worker_failed"
    assert "something went wrong" in result.data["logTail"]
    assert result.data["testsCreated"] == 0


def test_failed_generation_is_optional(tmp_path: Path) -> None:
    """Through the runner a failure is recorded on the stage, not the task."""
    work = tmp_path / "repo"
    _git_init(work)
    _commit_feature(work)
    stage = TestGenerationStage(WritingWorker(exit_code=2))
    ctx = _ctx(tmp_path, work)

    result = StageRunner(heartbeat=False).run(stage, ctx)

    assert not result.success
    assert stage.required is False
    record = ctx.repository.get("t1")
    assert record.stage_status(PipelineStage.GENERATING_TESTS) == PipelineStatus.FAILED.value
    assert record.status == PipelineStatus.IN_PROGRESS.value


def test_is_source_file() -> None:
    """Source filter drops tests, configs and non-code files."""
    assert is_source_file("src/app.ts")
    assert is_source_file("pkg/handler.go")
    assert not is_source_file("src/app.test.ts")
    assert not is_source_file("tests/test_app.py")
    assert not is_source_file("jest.config.js")
    assert not is_source_file("README.md")
