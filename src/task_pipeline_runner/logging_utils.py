"""Configure loguru and summarize command output for logs."""

from __future__ import annotations

import json
import sys
from typing import Any

from loguru import logger

from .constants import LOG_OUTPUT_MAX_CHARS
from .utils import _truncate


def configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


def output_excerpt(output: str, max_chars: int = LOG_OUTPUT_MAX_CHARS) -> str:
    """Shorten command output before writing it to a log line."""
    return _truncate(output or "", max_chars)


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable output.

    Args:
        obj: Object to serialize.
        indent: Indentation level for JSON output.

    Returns:
        A JSON string when possible; otherwise `str(obj)`.
    """
    try:
        return json.dumps(obj, indent=indent, default=str)
    except (TypeError, ValueError):
        return str(obj)
