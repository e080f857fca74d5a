from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path
from typing import Any, Optional

from .errors import PipelineError
from .logging_utils import configure_logging, pretty
from .models import PipelineStage
from .pipeline import PipelineDriver, build_default_registry
from .recovery import recover_stale_tasks
from .storage import Container
from .watchdog import WatchdogConfig, WatchdogService
from .worker import CommandCorrectiveWorker
from .worktrees import WorktreeManager


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _ctx(args: argparse.Namespace) -> Container:
    return Container(_resolve_project_dir(args.project_dir))


def _emit(payload: Any) -> None:
    sys.stdout.write(pretty(payload) + "\n")


def _status(args: argparse.Namespace) -> int:
    container = _ctx(args)
    repo = container.pipelines
    if args.task_id:
        record = repo.get(args.task_id)
        if record is None:
            sys.stderr.write(f"Pipeline not found for task: {args.task_id}\n")
            return 1
        summary = repo.get_summary(args.task_id)
        _emit({"summary": summary.to_dict() if summary else None, "pipeline": record.to_dict()})
        return 0
    summaries = [repo.get_summary(task_id) for task_id in repo.load()]
    _emit({"pipelines": [s.to_dict() for s in summaries if s is not None]})
    return 0


def _stale(args: argparse.Namespace) -> int:
    container = _ctx(args)
    threshold = args.threshold_ms or container.settings.stale_threshold_ms
    stale = container.pipelines.find_stale_tasks(threshold)
    _emit({"thresholdMs": threshold, "stale": [info.to_dict() for info in stale]})
    return 0


def _recover(args: argparse.Namespace) -> int:
    container = _ctx(args)
    stats = recover_stale_tasks(
        container.pipelines,
        container.settings,
        mark_as_failed=False if args.reset else None,
    )
    _emit(stats.to_dict())
    return 1 if stats.failed else 0


def _fail(args: argparse.Namespace) -> int:
    container = _ctx(args)
    record = container.pipelines.fail(args.task_id, args.message, args.reason)
    _emit({"pipeline": record.to_dict()})
    return 0


def _watchdog(args: argparse.Namespace) -> int:
    container = _ctx(args)
    config = WatchdogConfig.from_settings(container.settings)
    service = WatchdogService(container.pipelines, config)
    if args.once:
        _emit({"config": config.to_dict(), "failed": service.check_stale_tasks()})
        return 0
    if not config.enabled:
        sys.stderr.write("Watchdog is disabled in config\n")
        return 1
    service.start()
    try:
        while service.is_active():
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        service.stop()
    return 0


def _worktree_manager(args: argparse.Namespace) -> WorktreeManager:
    root = Path(args.worktrees_root).expanduser() if args.worktrees_root else None
    return WorktreeManager(_resolve_project_dir(args.project_dir), root)


def _worktrees_list(args: argparse.Namespace) -> int:
    manager = _worktree_manager(args)
    _emit({"root": str(manager.worktrees_root), "worktrees": [w.to_dict() for w in manager.list_worktrees()]})
    return 0


def _worktrees_remove(args: argparse.Namespace) -> int:
    manager = _worktree_manager(args)
    manager.remove_worktree(args.task_id, force=args.force)
    _emit({"removed": not manager.worktree_path(args.task_id).exists(), "taskId": args.task_id})
    return 0


def _worktrees_prune(args: argparse.Namespace) -> int:
    manager = _worktree_manager(args)
    removed = manager.cleanup_orphaned_worktrees()
    _emit({"removed": [str(path) for path in removed]})
    return 0


def _run(args: argparse.Namespace) -> int:
    container = _ctx(args)
    settings = container.settings
    repo_path = container.project_dir
    worker = CommandCorrectiveWorker(args.worker_command or settings.worker_command)
    driver = PipelineDriver(
        container.pipelines,
        build_default_registry(worker),
        settings=settings,
        worktrees=None if args.no_worktree else WorktreeManager(repo_path),
        artifacts_dir=container.artifacts_dir,
    )
    if args.implemented:
        # Implementation happened outside this process; record it so dependent stages may run.
        pipelines = container.pipelines
        record = pipelines.get(args.task_id)
        if record is None or (record.is_terminal and args.restart):
            # Reset here so the driver resumes this record instead of wiping it.
            pipelines.init(args.task_id, {"name": args.name}, overwrite=record is not None)
            record = None
        if record is None or not record.is_terminal:
            pipelines.update_stage(args.task_id, PipelineStage.IMPLEMENTING, {"name": "Implementation"})
            pipelines.complete_stage(args.task_id, PipelineStage.IMPLEMENTING, {"external": True})
    result = driver.run(
        args.task_id,
        args.name,
        repo_path,
        description=args.description,
        base_branch=args.base_branch,
        use_worktree=not args.no_worktree,
        restart=args.restart,
    )
    _emit(result.to_dict())
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Task pipeline orchestration CLI")
    parser.add_argument("--project-dir", default=None, help="Target project directory (default: current working directory)")
    parser.add_argument("--log-level", default="INFO", help="Log level for stderr output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    status = subparsers.add_parser("status", help="Show pipeline summaries, or one pipeline in full")
    status.add_argument("task_id", nargs="?", default=None)
    status.set_defaults(func=_status)

    stale = subparsers.add_parser("stale", help="List in-progress tasks with an expired heartbeat")
    stale.add_argument("--threshold-ms", type=int, default=None)
    stale.set_defaults(func=_stale)

    recover = subparsers.add_parser("recover", help="Fail (or reset) every stale task once")
    recover.add_argument("--reset", action="store_true", help="Reset stale stages for resumption instead of failing")
    recover.set_defaults(func=_recover)

    fail = subparsers.add_parser("fail", help="Mark a task as failed")
    fail.add_argument("task_id")
    fail.add_argument("message")
    fail.add_argument("--reason", default=None)
    fail.set_defaults(func=_fail)

    watchdog = subparsers.add_parser("watchdog", help="Run the stale-task watchdog")
    watchdog.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    watchdog.set_defaults(func=_watchdog)

    worktrees = subparsers.add_parser("worktrees", help="Inspect/clean task worktrees")
    worktrees.add_argument("--worktrees-root", default=None)
    wt_sub = worktrees.add_subparsers(dest="worktrees_cmd", required=True)
    wlist = wt_sub.add_parser("list", help="List linked worktrees")
    wlist.set_defaults(func=_worktrees_list)
    wremove = wt_sub.add_parser("remove", help="Remove one task's worktree")
    wremove.add_argument("task_id")
    wremove.add_argument("--force", action="store_true")
    wremove.set_defaults(func=_worktrees_remove)
    wprune = wt_sub.add_parser("prune", help="Remove worktree directories no task owns")
    wprune.set_defaults(func=_worktrees_prune)

    run = subparsers.add_parser("run", help="Run test generation and verification for a task")
    run.add_argument("task_id")
    run.add_argument("name")
    run.add_argument("--description", default="")
    run.add_argument("--base-branch", default="main")
    run.add_argument("--no-worktree", action="store_true")
    run.add_argument("--restart", action="store_true", help="Re-initialise a finished pipeline")
    run.add_argument("--implemented", action="store_true", help="Record the implementing stage as completed first")
    run.add_argument("--worker-command", default=None)
    run.set_defaults(func=_run)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except PipelineError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1
