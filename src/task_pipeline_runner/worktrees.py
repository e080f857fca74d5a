"""Per-task git worktrees so concurrent tasks never share a working tree."""

from __future__ import annotations

import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import TASK_BRANCH_PREFIX, WORKTREES_DIR_NAME
from .errors import WorktreeError
from .git_utils import (
    _git_branch_exists,
    _git_has_remote,
    _git_output,
    _git_ref_exists,
    _run_git,
)


@dataclass(frozen=True)
class WorktreeInfo:
    path: str
    branch: Optional[str] = None
    head: Optional[str] = None

    def to_dict(self) -> dict[str, Optional[str]]:
        return {"path": self.path, "branch": self.branch, "head": self.head}


def task_branch_name(task_id: str) -> str:
    return f"{TASK_BRANCH_PREFIX}{task_id}"


def _parse_worktree_list(output: str) -> list[WorktreeInfo]:
    entries: list[WorktreeInfo] = []
    current: dict[str, Optional[str]] = {}
    bare = False
    for line in output.splitlines() + [""]:
        if not line.strip():
            if current.get("path") and not bare:
                entries.append(
                    WorktreeInfo(path=str(current["path"]), branch=current.get("branch"), head=current.get("head"))
                )
            current = {}
            bare = False
            continue
        key, _, value = line.partition(" ")
        if key == "worktree":
            current["path"] = value
        elif key == "HEAD":
            current["head"] = value
        elif key == "branch":
            current["branch"] = value.removeprefix("refs/heads/")
        elif key == "bare":
            bare = True
    return entries


class WorktreeManager:
    """Create and dispose of isolated checkouts under a sibling worktrees root.

    Each task gets `<root>/task-<task_id>` on branch `task-<task_id>`. An
    in-memory registry keyed by task id answers `has_worktree` without touching
    git. Removal never raises: cleanup always wins over preserving a task's
    scratch directory.
    """

    def __init__(self, repo_path: Path, worktrees_root: Optional[Path] = None) -> None:
        self.repo_path = repo_path.resolve()
        self.worktrees_root = (
            worktrees_root.resolve()
            if worktrees_root
            else self.repo_path.parent / WORKTREES_DIR_NAME / self.repo_path.name
        )
        self._registry: dict[str, Path] = {}
        self._lock = threading.RLock()

    def _repo(self, repo_path: Optional[Path]) -> Path:
        return repo_path.resolve() if repo_path else self.repo_path

    def worktree_path(self, task_id: str) -> Path:
        return self.worktrees_root / task_branch_name(task_id)

    def has_worktree(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._registry

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_worktree(
        self,
        task_id: str,
        base_branch: str = "main",
        repo_path: Optional[Path] = None,
    ) -> Path:
        """Return the task's worktree path, creating it when needed.

        Calling this twice for the same task returns the existing path.
        """
        repo = self._repo(repo_path)
        path = self.worktree_path(task_id)
        branch = task_branch_name(task_id)

        with self._lock:
            existing = self._registry.get(task_id)
            if existing is not None and existing.exists():
                logger.debug("Reusing registered worktree: task={} path={}", task_id, existing)
                return existing

            if path.exists():
                if self._is_git_worktree(repo, path):
                    logger.info("Adopting existing worktree: task={} path={}", task_id, path)
                    self._registry[task_id] = path
                    return path
                logger.warning("Removing stale directory before creating worktree: {}", path)
                self._manual_remove(repo, path)

            path.parent.mkdir(parents=True, exist_ok=True)
            if _git_branch_exists(repo, branch):
                args = ["worktree", "add", str(path), branch]
            else:
                base_ref = self._resolve_base_ref(repo, base_branch)
                args = ["worktree", "add", "-b", branch, str(path), base_ref]

            result = _run_git(args, repo)
            if result.returncode != 0:
                raise WorktreeError(
                    f"git worktree add failed for task {task_id}: {_git_output(result)}"
                )

            self._registry[task_id] = path
            logger.info("Created worktree: task={} branch={} path={}", task_id, branch, path)
            return path

    def _resolve_base_ref(self, repo: Path, base_branch: str) -> str:
        if _git_has_remote(repo, "origin"):
            fetch = _run_git(["fetch", "origin", base_branch], repo)
            if fetch.returncode != 0:
                logger.debug("git fetch origin {} failed: {}", base_branch, _git_output(fetch))
            remote_ref = f"origin/{base_branch}"
            if _git_ref_exists(repo, remote_ref):
                return remote_ref
        if _git_ref_exists(repo, base_branch):
            return base_branch
        raise WorktreeError(f"Base branch not found: {base_branch}")

    def _is_git_worktree(self, repo: Path, path: Path) -> bool:
        target = path.resolve()
        return any(Path(info.path).resolve() == target for info in self.list_worktrees(repo))

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def remove_worktree(
        self,
        task_id: str,
        repo_path: Optional[Path] = None,
        force: bool = False,
    ) -> None:
        """Remove the task's worktree; a missing worktree is a no-op."""
        repo = self._repo(repo_path)
        with self._lock:
            path = self._registry.get(task_id) or self.worktree_path(task_id)
            try:
                if not path.exists():
                    logger.debug("No worktree to remove: task={} path={}", task_id, path)
                    _run_git(["worktree", "prune"], repo)
                    return
                if self._git_remove(repo, path, force=force):
                    logger.info("Removed worktree: task={} path={}", task_id, path)
                    return
                if not force:
                    logger.warning("Worktree removal failed, retrying with --force: task={}", task_id)
                    if self._git_remove(repo, path, force=True):
                        logger.info("Removed worktree with --force: task={} path={}", task_id, path)
                        return
                logger.warning("git worktree remove failed, deleting manually: task={} path={}", task_id, path)
                self._manual_remove(repo, path)
            finally:
                self._registry.pop(task_id, None)

    def _git_remove(self, repo: Path, path: Path, *, force: bool) -> bool:
        args = ["worktree", "remove", str(path)]
        if force:
            args.append("--force")
        result = _run_git(args, repo)
        if result.returncode != 0:
            logger.debug("git worktree remove {} failed: {}", path, _git_output(result))
            return False
        return not path.exists()

    def _manual_remove(self, repo: Path, path: Path) -> None:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("Failed to delete worktree directory {}: {}", path, exc)
        prune = _run_git(["worktree", "prune"], repo)
        if prune.returncode != 0:
            logger.warning("git worktree prune failed: {}", _git_output(prune))

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def list_worktrees(self, repo_path: Optional[Path] = None) -> list[WorktreeInfo]:
        """List linked worktrees of the repository, excluding the primary checkout."""
        repo = self._repo(repo_path)
        result = _run_git(["worktree", "list", "--porcelain"], repo)
        if result.returncode != 0:
            logger.warning("git worktree list failed: {}", _git_output(result))
            return []
        entries = _parse_worktree_list(result.stdout)
        primary = repo.resolve()
        return [info for info in entries if Path(info.path).resolve() != primary]

    def cleanup_orphaned_worktrees(self, repo_path: Optional[Path] = None) -> list[Path]:
        """Remove directories under the worktrees root that no task has registered."""
        repo = self._repo(repo_path)
        if not self.worktrees_root.exists():
            return []
        with self._lock:
            known = {p.resolve() for p in self._registry.values()}
            removed: list[Path] = []
            for child in sorted(self.worktrees_root.iterdir()):
                if not child.is_dir() or child.resolve() in known:
                    continue
                if not self._git_remove(repo, child, force=True):
                    self._manual_remove(repo, child)
                removed.append(child)
                logger.info("Removed orphaned worktree: {}", child)
            return removed
