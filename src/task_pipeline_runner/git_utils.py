"""Provide small git helpers used by worktrees and stages."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import DEFAULT_GIT_TIMEOUT_SECONDS


def _run_git(
    args: list[str],
    cwd: Path,
    *,
    timeout: Optional[float] = DEFAULT_GIT_TIMEOUT_SECONDS,
    env: Optional[dict[str, str]] = None,
) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
            env=env,
        )
    except subprocess.TimeoutExpired as exc:
        return subprocess.CompletedProcess(
            exc.cmd,
            124,
            stdout="",
            stderr=f"git {' '.join(args)} timed out after {timeout}s",
        )
    except OSError as exc:
        # Missing cwd or git binary.
        return subprocess.CompletedProcess(["git", *args], 127, stdout="", stderr=str(exc))


def _git_output(result: subprocess.CompletedProcess[str]) -> str:
    return (result.stderr or "").strip() or (result.stdout or "").strip()


def _git_is_repo(project_dir: Path) -> bool:
    if not project_dir.exists():
        return False
    result = _run_git(["rev-parse", "--is-inside-work-tree"], project_dir)
    return result.returncode == 0 and result.stdout.strip().lower() == "true"


def _git_ref_exists(project_dir: Path, ref: str) -> bool:
    result = _run_git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], project_dir)
    return result.returncode == 0


def _git_branch_exists(project_dir: Path, branch: str) -> bool:
    result = _run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], project_dir)
    return result.returncode == 0


def _git_has_remote(project_dir: Path, remote: str = "origin") -> bool:
    result = _run_git(["remote"], project_dir)
    if result.returncode != 0:
        return False
    return remote in {line.strip() for line in result.stdout.splitlines()}


def _git_status_paths(project_dir: Path) -> list[str]:
    """Return paths reported by `git status --porcelain`, untracked included."""
    result = _run_git(["status", "--porcelain", "--untracked-files=all"], project_dir)
    if result.returncode != 0:
        return []
    paths: list[str] = []
    for line in result.stdout.splitlines():
        if len(line) < 4:
            continue
        path = line[3:].strip()
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        paths.append(path.strip('"'))
    return paths


def _git_has_changes(project_dir: Path) -> bool:
    result = _run_git(["status", "--porcelain"], project_dir)
    return result.returncode == 0 and bool(result.stdout.strip())


def _git_changed_files(project_dir: Path, base_branch: str = "main") -> list[str]:
    """List files changed on the current branch relative to its base.

    Tries `origin/<base>...HEAD`, then `<base>...HEAD`, then the last few
    commits, returning the first diff git accepts.
    """
    candidates = [
        ["diff", "--name-only", f"origin/{base_branch}...HEAD"],
        ["diff", "--name-only", f"{base_branch}...HEAD"],
        ["diff", "--name-only", "HEAD~5...HEAD"],
    ]
    for args in candidates:
        result = _run_git(args, project_dir)
        if result.returncode == 0:
            return [line.strip() for line in result.stdout.splitlines() if line.strip()]
    return []


def _clean_git_env() -> dict[str, str]:
    env = dict(os.environ)
    # Let `gh`/credential helpers use keyring auth instead of a stale token.
    env.pop("GITHUB_TOKEN", None)
    env.pop("GH_TOKEN", None)
    return env


def _git_commit_all(project_dir: Path, message: str) -> bool:
    """Stage everything and commit. Returns False when there was nothing to commit."""
    if not _git_has_changes(project_dir):
        return False
    env = _clean_git_env()
    add = _run_git(["add", "-A"], project_dir, env=env)
    if add.returncode != 0:
        logger.warning("git add failed in {}: {}", project_dir, _git_output(add))
        return False
    commit = _run_git(["commit", "-m", message], project_dir, env=env)
    if commit.returncode != 0:
        logger.warning("git commit failed in {}: {}", project_dir, _git_output(commit))
        return False
    return True


def _git_push(project_dir: Path, branch: str, remote: str = "origin") -> bool:
    if not _git_has_remote(project_dir, remote):
        logger.debug("No remote {} configured for {}; skipping push", remote, project_dir)
        return False
    result = _run_git(["push", remote, branch], project_dir, env=_clean_git_env())
    if result.returncode != 0:
        logger.warning("git push {} {} failed: {}", remote, branch, _git_output(result))
        return False
    return True


def _git_head(project_dir: Path) -> Optional[str]:
    result = _run_git(["rev-parse", "HEAD"], project_dir)
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _git_diff_names(project_dir: Path, base_ref: str, head_ref: str = "HEAD") -> list[str]:
    result = _run_git(["diff", "--name-only", f"{base_ref}..{head_ref}"], project_dir)
    if result.returncode != 0:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]
