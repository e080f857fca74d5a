"""Load optional pipeline configuration from `.task_pipeline/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .constants import (
    CONFIG_FILE,
    DEFAULT_BUILD_COMMANDS,
    DEFAULT_COMMAND_TIMEOUT_MS,
    DEFAULT_HEARTBEAT_INTERVAL_MS,
    DEFAULT_MAX_FIX_ATTEMPTS,
    DEFAULT_STALE_THRESHOLD_MS,
    DEFAULT_TEST_COMMAND,
    DEFAULT_WATCHDOG_INTERVAL_MS,
    DEFAULT_WORKER_COMMAND,
    DEFAULT_WORKER_TIMEOUT_MS,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error
from .utils import _coerce_int


@dataclass(frozen=True)
class PipelineSettings:
    """Numeric and command settings consumed by the pipeline core."""

    stale_threshold_ms: int = DEFAULT_STALE_THRESHOLD_MS
    watchdog_enabled: bool = True
    watchdog_interval_ms: int = DEFAULT_WATCHDOG_INTERVAL_MS
    heartbeat_interval_ms: int = DEFAULT_HEARTBEAT_INTERVAL_MS
    max_fix_attempts: int = DEFAULT_MAX_FIX_ATTEMPTS
    command_timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS
    worker_timeout_ms: int = DEFAULT_WORKER_TIMEOUT_MS
    stale_task_recovery_enabled: bool = True
    stale_task_auto_fail: bool = True
    worker_command: str = DEFAULT_WORKER_COMMAND
    build_commands: tuple[str, ...] = field(default=DEFAULT_BUILD_COMMANDS)
    test_command: str = DEFAULT_TEST_COMMAND

    @property
    def command_timeout_seconds(self) -> float:
        return self.command_timeout_ms / 1000

    @property
    def worker_timeout_seconds(self) -> float:
        return self.worker_timeout_ms / 1000


def load_runner_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _section(config: dict[str, Any], name: str) -> dict[str, Any]:
    raw = _get_nested(config, name)
    return raw if isinstance(raw, dict) else {}


def get_watchdog_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the `watchdog` block (enabled, check_interval_ms, stale_threshold_ms)."""
    return _section(config, "watchdog")


def get_pipeline_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the `pipeline` block (stale task recovery and heartbeat settings)."""
    return _section(config, "pipeline")


def get_verify_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the `verify` block (commands, timeouts and fix attempts)."""
    return _section(config, "verify")


def get_worker_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the `worker` block (corrective worker command and timeout)."""
    return _section(config, "worker")


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return default


def _positive_int(value: Any, default: int) -> int:
    number = _coerce_int(value, default)
    return number if number > 0 else default


def settings_from_config(config: dict[str, Any]) -> PipelineSettings:
    defaults = PipelineSettings()
    watchdog = get_watchdog_config(config)
    pipeline = get_pipeline_config(config)
    verify = get_verify_config(config)
    worker = get_worker_config(config)

    build_commands: tuple[str, ...] = defaults.build_commands
    raw_build = verify.get("build_commands")
    if isinstance(raw_build, str) and raw_build.strip():
        build_commands = (raw_build.strip(),)
    elif isinstance(raw_build, list):
        build_commands = tuple(str(cmd).strip() for cmd in raw_build if str(cmd).strip())

    test_command = verify.get("test_command")
    worker_command = worker.get("command")

    return PipelineSettings(
        stale_threshold_ms=_positive_int(watchdog.get("stale_threshold_ms"), defaults.stale_threshold_ms),
        watchdog_enabled=_as_bool(watchdog.get("enabled"), defaults.watchdog_enabled),
        watchdog_interval_ms=_positive_int(watchdog.get("check_interval_ms"), defaults.watchdog_interval_ms),
        heartbeat_interval_ms=_positive_int(
            pipeline.get("heartbeat_interval_ms"), defaults.heartbeat_interval_ms
        ),
        max_fix_attempts=max(0, _coerce_int(verify.get("max_fix_attempts"), defaults.max_fix_attempts)),
        command_timeout_ms=_positive_int(verify.get("command_timeout_ms"), defaults.command_timeout_ms),
        worker_timeout_ms=_positive_int(worker.get("timeout_ms"), defaults.worker_timeout_ms),
        stale_task_recovery_enabled=_as_bool(
            pipeline.get("stale_task_recovery_enabled"), defaults.stale_task_recovery_enabled
        ),
        stale_task_auto_fail=_as_bool(pipeline.get("stale_task_auto_fail"), defaults.stale_task_auto_fail),
        worker_command=str(worker_command).strip() if isinstance(worker_command, str) and worker_command.strip() else defaults.worker_command,
        build_commands=build_commands,
        test_command=str(test_command).strip() if isinstance(test_command, str) and test_command.strip() else defaults.test_command,
    )


def load_settings(project_dir: Path) -> tuple[PipelineSettings, Optional[str]]:
    """Load settings for `project_dir`, falling back to defaults on parse errors."""
    config, err = load_runner_config(project_dir)
    return settings_from_config(config), err
