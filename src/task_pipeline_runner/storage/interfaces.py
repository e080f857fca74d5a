from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Any


class StateStorage(ABC):
    """Backing handle for the raw `task_id -> record` mapping.

    `transaction()` must serialise read-modify-write cycles: everything done
    between entering and leaving it is invisible to other writers.
    """

    @abstractmethod
    def load(self) -> dict[str, dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def save(self, data: dict[str, dict[str, Any]]) -> None:
        raise NotImplementedError

    @abstractmethod
    def transaction(self) -> AbstractContextManager[None]:
        raise NotImplementedError
