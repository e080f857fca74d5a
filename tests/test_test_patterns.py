from __future__ import annotations

import os
from pathlib import Path

from task_pipeline_runner.prompts import _build_test_generation_prompt, _build_verify_fix_prompt
from task_pipeline_runner.test_patterns import (
    find_test_files,
    format_test_patterns,
    is_test_file,
    load_test_patterns,
)


def _write(path: Path, text: str, mtime: float | None = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    if mtime is not None:
        os.utime(path, (mtime, mtime))


def test_is_test_file_conventions() -> None:
    assert is_test_file("src/login.test.ts")
    assert is_test_file("web/Button.spec.tsx")
    assert is_test_file("tests/test_api.py")
    assert is_test_file("pkg/server_test.go")
    assert is_test_file("src/__tests__/helpers.js")
    assert not is_test_file("src/login.ts")
    assert not is_test_file("test_data.json")


def test_find_test_files_newest_first_and_skips_vendor(tmp_path: Path) -> None:
    """Search skips dependency and hidden directories."""
    _write(tmp_path / "tests" / "test_old.py", "def test_old():\n    pass\n", mtime=1_000_000)
    _write(tmp_path / "src" / "new.test.ts", "it('works', () => {})\n", mtime=2_000_000)
    _write(tmp_path / "node_modules" / "lib" / "x.test.js", "vendored\n")
    _write(tmp_path / ".venv" / "test_site.py", "hidden\n")

    found = [p.relative_to(tmp_path).as_posix() for p in find_test_files(tmp_path)]

    assert found == ["src/new.test.ts", "tests/test_old.py"]


def test_load_test_patterns_limits(tmp_path: Path) -> None:
    """At most `max_examples` files, each cut to `max_lines_per_file` lines."""
    for index in range(5):
        _write(tmp_path / f"test_{index}.py", "\n".join(f"line {n}" for n in range(200)), mtime=1_000_000 + index)
    _write(tmp_path / "test_empty.py", "   \n", mtime=3_000_000)

    patterns = load_test_patterns(tmp_path, max_examples=2, max_lines_per_file=10)

    assert [p.relative_path for p in patterns] == ["test_4.py", "test_3.py"]
    assert patterns[0].content.endswith("... (truncated)")
    assert patterns[0].content.count("\n") == 10

    text = format_test_patterns(patterns)
    assert "### Example 1: test_4.py" in text
    assert format_test_patterns([]) == ""


def test_verify_fix_prompt_sections(tmp_path: Path) -> None:
    """The fix prompt carries errors, worktree note and verify commands."""
    prompt = _build_verify_fix_prompt(
        "t1",
        "task-t1",
        tmp_path,
        is_worktree=True,
        test_error="AssertionError: 1 != 2",
        build_commands=("npm run build",),
        test_command="npm test",
    )

    assert "TEST ERRORS:" in prompt
    assert "BUILD ERRORS:" not in prompt
    assert "isolated worktree with branch 'task-t1'" in prompt
    assert "   npm run build\n   npm test" in prompt


def test_test_generation_prompt_lists_files(tmp_path: Path) -> None:
    prompt = _build_test_generation_prompt("t1", "Login", "", ["src/login.ts"], tmp_path)
    assert "- src/login.ts" in prompt
    assert "No description provided" in prompt
