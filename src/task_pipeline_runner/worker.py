from __future__ import annotations

import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from loguru import logger

from .constants import TIMEOUT_EXIT_CODE
from .utils import _now_iso


@dataclass(frozen=True)
class WorkerRunResult:
    command: str
    exit_code: int
    log_path: str
    timed_out: bool = False
    signal: Optional[int] = None
    runtime_seconds: float = 0.0
    start_time: str = ""
    end_time: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class CorrectiveWorker(Protocol):
    """External program that fixes a detected failure in a working directory.

    Only the exit status and the files it leaves behind matter to the pipeline.
    """

    def run(
        self,
        prompt: str,
        *,
        cwd: Path,
        timeout_seconds: float,
        log_path: Path,
        on_tick: Optional[Callable[[], None]] = None,
    ) -> WorkerRunResult:
        ...


def _stop_process(process: subprocess.Popen) -> None:
    process.terminate()
    try:
        process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


class CommandCorrectiveWorker:
    """Run a CLI agent as the corrective worker.

    The command may reference `{prompt_file}`, `{prompt}` or `{cwd}`; a bare
    `-` argument means the prompt is piped through stdin. Combined
    stdout/stderr goes to `log_path`.
    """

    def __init__(
        self,
        command: str,
        *,
        poll_interval_seconds: float = 5.0,
        env: Optional[dict[str, str]] = None,
    ) -> None:
        self.command = command
        self.poll_interval_seconds = poll_interval_seconds
        self.env = env

    def _format(self, prompt: str, prompt_path: Path, cwd: Path) -> tuple[list[str], bool]:
        try:
            formatted = self.command.format(prompt_file=str(prompt_path), prompt=prompt, cwd=str(cwd))
        except KeyError as exc:
            raise ValueError(f"Unknown placeholder in worker command: {exc}") from exc
        parts = shlex.split(formatted)
        uses_placeholder = "{prompt_file}" in self.command or "{prompt}" in self.command
        expects_stdin = "-" in parts
        if not uses_placeholder and not expects_stdin:
            raise ValueError(
                "Worker command must include {prompt_file}, {prompt}, or '-' to accept stdin input."
            )
        return parts, expects_stdin and not uses_placeholder

    def run(
        self,
        prompt: str,
        *,
        cwd: Path,
        timeout_seconds: float,
        log_path: Path,
        on_tick: Optional[Callable[[], None]] = None,
    ) -> WorkerRunResult:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        prompt_path = log_path.with_name(log_path.stem + ".prompt.txt")
        prompt_path.write_text(prompt, encoding="utf-8")
        parts, pipe_prompt = self._format(prompt, prompt_path, cwd)
        display = shlex.join(parts)

        start_iso = _now_iso()
        start = time.monotonic()
        timed_out = False
        env = dict(self.env) if self.env is not None else dict(os.environ)

        with open(log_path, "a", encoding="utf-8") as handle:
            try:
                process = subprocess.Popen(
                    parts,
                    cwd=cwd,
                    stdin=subprocess.PIPE if pipe_prompt else subprocess.DEVNULL,
                    stdout=handle,
                    stderr=subprocess.STDOUT,
                    text=True,
                    env=env,
                )
            except OSError as exc:
                handle.write(f"\n[pipeline] Failed to start worker: {exc}\n")
                logger.error("Failed to start corrective worker {}: {}", display, exc)
                return WorkerRunResult(
                    command=display,
                    exit_code=127,
                    log_path=str(log_path),
                    start_time=start_iso,
                    end_time=_now_iso(),
                )

            if pipe_prompt and process.stdin:
                try:
                    process.stdin.write(prompt)
                    process.stdin.flush()
                    process.stdin.close()
                except BrokenPipeError:
                    pass

            try:
                while True:
                    remaining = timeout_seconds - (time.monotonic() - start)
                    if remaining <= 0:
                        timed_out = True
                        _stop_process(process)
                        handle.write(f"\n[pipeline] Worker timed out after {timeout_seconds}s\n")
                        break
                    try:
                        process.wait(timeout=min(self.poll_interval_seconds, remaining))
                        break
                    except subprocess.TimeoutExpired:
                        pass
                    if on_tick:
                        try:
                            on_tick()
                        except Exception as exc:
                            logger.warning("Worker tick callback failed: {}", exc)
            finally:
                # Never leave the worker running behind an interrupted wait.
                if process.poll() is None:
                    _stop_process(process)

        try:
            prompt_path.unlink()
        except OSError:
            pass

        returncode = process.returncode if process.returncode is not None else -1
        signal = -returncode if returncode < 0 else None
        exit_code = TIMEOUT_EXIT_CODE if timed_out else returncode
        runtime = time.monotonic() - start
        if timed_out:
            logger.warning("Corrective worker timed out after {}s: {}", timeout_seconds, display)
        elif exit_code != 0:
            logger.warning("Corrective worker exited with code {} (signal {})", exit_code, signal)
        return WorkerRunResult(
            command=display,
            exit_code=exit_code,
            log_path=str(log_path),
            timed_out=timed_out,
            signal=signal,
            runtime_seconds=runtime,
            start_time=start_iso,
            end_time=_now_iso(),
        )


@dataclass(frozen=True)
class CommandResult:
    command: str
    exit_code: int
    output: str
    log_path: str
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


CommandRunner = Callable[..., CommandResult]


def _run_command(
    command: str,
    project_dir: Path,
    log_path: Path,
    *,
    timeout_seconds: Optional[float] = None,
    env: Optional[dict[str, str]] = None,
) -> CommandResult:
    """Run a shell command with combined output captured to `log_path`."""
    log_path.parent.mkdir(parents=True, exist_ok=True)
    run_env = dict(os.environ)
    run_env["CI"] = "true"
    if env:
        run_env.update(env)
    timed_out = False
    exit_code = 0
    with open(log_path, "w", encoding="utf-8") as handle:
        try:
            result = subprocess.run(
                command,
                cwd=project_dir,
                shell=True,
                stdout=handle,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=timeout_seconds,
                env=run_env,
            )
            exit_code = result.returncode
        except subprocess.TimeoutExpired:
            timed_out = True
            exit_code = TIMEOUT_EXIT_CODE
            handle.write(f"\n[pipeline] Command timed out after {timeout_seconds}s\n")
    output = log_path.read_text(encoding="utf-8", errors="replace")
    return CommandResult(
        command=command,
        exit_code=exit_code,
        output=output,
        log_path=str(log_path),
        timed_out=timed_out,
    )
