"""Build the text prompts passed to the corrective worker."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from .constants import PROMPT_OUTPUT_MAX_CHARS
from .utils import _truncate


def _build_verify_fix_prompt(
    task_id: str,
    branch: str,
    working_path: Path,
    *,
    is_worktree: bool,
    build_error: Optional[str] = None,
    test_error: Optional[str] = None,
    test_patterns: str = "",
    build_commands: tuple[str, ...] = (),
    test_command: str = "",
) -> str:
    """Build the prompt asking the worker to repair a failed build or test run."""
    error_block = ""
    if build_error:
        error_block += f"BUILD ERRORS:\n```\n{_truncate(build_error, PROMPT_OUTPUT_MAX_CHARS)}\n```\n\n"
    if test_error:
        error_block += f"TEST ERRORS:\n```\n{_truncate(test_error, PROMPT_OUTPUT_MAX_CHARS)}\n```\n\n"
    worktree_note = (
        f"You are in an isolated worktree with branch '{branch}' already checked out.\n"
        if is_worktree
        else ""
    )
    verify_lines = "\n".join(f"   {cmd}" for cmd in (*build_commands, test_command) if cmd)
    return f"""You need to fix build and/or test errors in the codebase.

Task ID: {task_id}
Branch: {branch}
Working path: {working_path}{" (isolated worktree)" if is_worktree else ""}
{worktree_note}
{error_block}{test_patterns}
Your task:
1. Read each error above and find its root cause.
2. Fix the errors:
   - Build/type errors: fix type mismatches, missing imports and syntax errors.
   - Test errors: fix the test OR the code being tested.
   - Missing tests: write new tests that follow the existing patterns.
3. Verify your fixes:
{verify_lines}

Rules:
- Fix ALL errors shown above.
- Follow existing code patterns.
- Do not disable or skip failing tests to make them pass.
"""


def _build_test_generation_prompt(
    task_id: str,
    task_name: str,
    description: str,
    changed_files: list[str],
    working_path: Path,
    *,
    test_patterns: str = "",
) -> str:
    """Build the prompt asking the worker to add tests for a task's changes."""
    files_block = "\n".join(f"- {path}" for path in changed_files)
    return f"""Write tests for the feature implemented in this task.

Task ID: {task_id}
Task: {task_name}
Working path: {working_path}

Description:
{description or "No description provided"}

Changed source files:
{files_block}

{test_patterns}
Requirements:
- Cover the new behavior of every changed file listed above.
- Use the same framework, file naming and directory layout as the existing tests.
- Do not modify the implementation unless a test exposes a real bug.
- Leave the new test files in the working tree; they are committed for you.
"""
