from .container import Container
from .file_storage import JsonFileStorage, MemoryStorage
from .interfaces import StateStorage
from .repository import PipelineRepository

__all__ = [
    "Container",
    "JsonFileStorage",
    "MemoryStorage",
    "PipelineRepository",
    "StateStorage",
]
