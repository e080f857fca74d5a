from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from task_pipeline_runner.errors import WorktreeError
from task_pipeline_runner.worktrees import WorktreeManager, _parse_worktree_list, task_branch_name


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


def _repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    _git_init(repo)
    return repo


def test_default_root_is_sibling_of_repo(tmp_path: Path) -> None:
    """Worktrees live next to the repository, never inside it."""
    repo = _repo(tmp_path)
    manager = WorktreeManager(repo)

    path = manager.create_worktree("t1", "main")

    assert manager.worktrees_root == tmp_path.resolve() / ".task-pipeline-worktrees" / "repo"
    assert path == manager.worktrees_root / "task-t1"
    assert (path / "README.md").exists()
    branch = subprocess.run(
        ["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=path, check=True, capture_output=True, text=True
    ).stdout.strip()
    assert branch == task_branch_name("t1") == "task-t1"


def test_create_is_idempotent(tmp_path: Path) -> None:
    """A second create returns the same path, even from a fresh manager."""
    repo = _repo(tmp_path)
    manager = WorktreeManager(repo, tmp_path / "wt")

    first = manager.create_worktree("t1")
    second = manager.create_worktree("t1")
    assert first == second
    assert manager.has_worktree("t1")

    adopted = WorktreeManager(repo, tmp_path / "wt").create_worktree("t1")
    assert adopted == first


def test_recreate_after_remove_reuses_branch(tmp_path: Path) -> None:
    """The task branch survives removal and is checked out again."""
    repo = _repo(tmp_path)
    manager = WorktreeManager(repo, tmp_path / "wt")

    path = manager.create_worktree("t1")
    (path / "feature.txt").write_text("work\n")
    subprocess.run(["git", "add", "-A"], cwd=path, check=True, capture_output=True, text=True)
    subprocess.run(["git", "commit", "-m", "work"], cwd=path, check=True, capture_output=True, text=True)
    manager.remove_worktree("t1")

    again = manager.create_worktree("t1")
    assert (again / "feature.txt").read_text() == "work\n"


def test_double_remove_is_a_noop(tmp_path: Path) -> None:
    """Removing twice, or removing an unknown task, never raises."""
    repo = _repo(tmp_path)
    manager = WorktreeManager(repo, tmp_path / "wt")
    path = manager.create_worktree("t1")

    manager.remove_worktree("t1")
    manager.remove_worktree("t1")
    manager.remove_worktree("never-created")

    assert not path.exists()
    assert not manager.has_worktree("t1")


def test_dirty_worktree_is_removed_without_force(tmp_path: Path) -> None:
    """Uncommitted changes do not block cleanup."""
    repo = _repo(tmp_path)
    manager = WorktreeManager(repo, tmp_path / "wt")
    path = manager.create_worktree("t1")
    (path / "README.md").write_text("modified\n")
    (path / "untracked.txt").write_text("scratch\n")

    manager.remove_worktree("t1", force=False)

    assert not path.exists()
    assert manager.list_worktrees() == []


def test_corrupted_git_file_is_removed_manually(tmp_path: Path) -> None:
    """A worktree git refuses to remove is deleted from disk and pruned."""
    repo = _repo(tmp_path)
    manager = WorktreeManager(repo, tmp_path / "wt")
    path = manager.create_worktree("t1")
    (path / ".git").write_text("gitdir: /nonexistent/location\n")

    manager.remove_worktree("t1")

    assert not path.exists()
    assert manager.list_worktrees() == []


def test_list_excludes_primary_checkout(tmp_path: Path) -> None:
    """Only linked worktrees are listed."""
    repo = _repo(tmp_path)
    manager = WorktreeManager(repo, tmp_path / "wt")
    assert manager.list_worktrees() == []

    path = manager.create_worktree("t1")
    listed = manager.list_worktrees()

    assert len(listed) == 1
    assert Path(listed[0].path).resolve() == path.resolve()
    assert listed[0].branch == "task-t1"
    assert listed[0].head


def test_missing_base_branch_raises(tmp_path: Path) -> None:
    """An unknown base ref is a creation error, not a silent fallback."""
    repo = _repo(tmp_path)
    manager = WorktreeManager(repo, tmp_path / "wt")

    with pytest.raises(WorktreeError, match="Base branch not found: develop"):
        manager.create_worktree("t1", "develop")
    assert not manager.has_worktree("t1")


def test_stale_directory_is_replaced(tmp_path: Path) -> None:
    """A plain directory squatting on the worktree path is cleared first."""
    repo = _repo(tmp_path)
    manager = WorktreeManager(repo, tmp_path / "wt")
    squatter = manager.worktree_path("t1")
    squatter.mkdir(parents=True)
    (squatter / "junk.txt").write_text("junk\n")

    path = manager.create_worktree("t1")

    assert path == squatter
    assert not (path / "junk.txt").exists()
    assert (path / "README.md").exists()


def test_cleanup_orphaned_keeps_registered(tmp_path: Path) -> None:
    """Prune removes unknown directories and leaves live task worktrees alone."""
    repo = _repo(tmp_path)
    manager = WorktreeManager(repo, tmp_path / "wt")
    live = manager.create_worktree("t1")
    stray = manager.worktrees_root / "stray"
    stray.mkdir()
    (stray / "file.txt").write_text("x\n")

    removed = manager.cleanup_orphaned_worktrees()

    assert removed == [stray]
    assert not stray.exists()
    assert live.exists()


def test_cleanup_orphaned_without_root(tmp_path: Path) -> None:
    """Nothing to prune when the worktrees root was never created."""
    repo = _repo(tmp_path)
    assert WorktreeManager(repo, tmp_path / "missing").cleanup_orphaned_worktrees() == []


def test_parse_worktree_list_skips_bare_entries() -> None:
    """Porcelain output parses into path, branch and head."""
    output = (
        "worktree /srv/repo.git\nbare\n\n"
        "worktree /srv/wt/task-a\nHEAD abc123\nbranch refs/heads/task-a\n\n"
        "worktree /srv/wt/detached\nHEAD def456\ndetached\n"
    )
    entries = _parse_worktree_list(output)

    assert [e.path for e in entries] == ["/srv/wt/task-a", "/srv/wt/detached"]
    assert entries[0].branch == "task-a"
    assert entries[0].head == "abc123"
    assert entries[1].branch is None


def test_remove_with_missing_repository_is_a_noop(tmp_path: Path) -> None:
    """Removal never raises, even when the repository itself is gone."""
    manager = WorktreeManager(tmp_path / "gone-repo", tmp_path / "wt")

    manager.remove_worktree("t1")

    assert not manager.has_worktree("t1")


def test_remove_after_repository_deleted(tmp_path: Path) -> None:
    """A leftover worktree directory is deleted even if git cannot run there."""
    repo = _repo(tmp_path)
    manager = WorktreeManager(repo, tmp_path / "wt")
    path = manager.create_worktree("t1")
    shutil.rmtree(repo)

    manager.remove_worktree("t1")

    assert not path.exists()
    assert not manager.has_worktree("t1")
    assert manager.list_worktrees() == []
