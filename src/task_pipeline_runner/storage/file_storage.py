from __future__ import annotations

import copy
import json
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

from ..errors import StateReadError, StateWriteError
from ..io_utils import FileLock, _atomic_write_json
from .interfaces import StateStorage


class JsonFileStorage(StateStorage):
    """Pretty-printed JSON file guarded by a sibling lock file.

    The lock is re-entrant per thread so `load`/`save` can be called inside
    `transaction()` without deadlocking.
    """

    def __init__(self, path: Path, lock_path: Optional[Path] = None) -> None:
        self.path = path
        self.lock_path = lock_path or path.with_suffix(path.suffix + ".lock")
        self._file_lock = FileLock(self.lock_path)
        self._thread_lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._thread_lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return
            with self._file_lock:
                self._depth = 1
                try:
                    yield
                finally:
                    self._depth = 0

    def load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StateReadError(self.path, f"{exc.__class__.__name__}: {exc}") from exc
        if not text.strip():
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StateReadError(self.path, f"JSONDecodeError: {exc}") from exc
        if not isinstance(data, dict):
            raise StateReadError(self.path, f"expected object, got {type(data).__name__}")
        return data

    def save(self, data: dict[str, dict[str, Any]]) -> None:
        try:
            _atomic_write_json(self.path, data)
        except (OSError, TypeError, ValueError) as exc:
            raise StateWriteError(self.path, f"{exc.__class__.__name__}: {exc}") from exc


class MemoryStorage(StateStorage):
    """In-process storage; each instance is fully isolated."""

    def __init__(self, initial: Optional[dict[str, dict[str, Any]]] = None) -> None:
        self._data: dict[str, dict[str, Any]] = copy.deepcopy(initial or {})
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            yield

    def load(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._data)

    def save(self, data: dict[str, dict[str, Any]]) -> None:
        with self._lock:
            self._data = copy.deepcopy(data)
