from __future__ import annotations

from pathlib import Path
from typing import Optional

from loguru import logger

from ..config import PipelineSettings, load_settings
from ..constants import ARTIFACTS_DIR, LOCK_FILE, PIPELINE_STATE_FILE, STATE_DIR_NAME
from ..io_utils import _ensure_gitignore
from .file_storage import JsonFileStorage
from .repository import PipelineRepository


class Container:
    """Wire the file-backed state store and settings for one project directory."""

    def __init__(self, project_dir: Path, *, settings: Optional[PipelineSettings] = None) -> None:
        self.project_dir = project_dir.resolve()
        self.state_root = self.project_dir / STATE_DIR_NAME
        _ensure_gitignore(self.state_root)
        self.artifacts_dir = self.state_root / ARTIFACTS_DIR

        if settings is None:
            settings, err = load_settings(self.project_dir)
            if err:
                logger.warning("config.yaml parse error, using defaults: {}", err)
        self.settings = settings

        self.storage = JsonFileStorage(
            self.state_root / PIPELINE_STATE_FILE,
            self.state_root / LOCK_FILE,
        )
        self.pipelines = PipelineRepository(self.storage)

    @property
    def project_id(self) -> str:
        return self.project_dir.name
