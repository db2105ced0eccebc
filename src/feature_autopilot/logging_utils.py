"""Configure loguru sinks and format values for log output."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger

_STDERR_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
    "{message}"
)

_FILE_FORMAT = "[{time:HH:mm:ss.SSS}] {level} {module}: {message}"


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure loguru with a stderr sink and an optional log file.

    Args:
        level: Minimum level for the stderr sink.
        log_file: When given, every record at DEBUG and above is also written
            there (the file is truncated at startup).
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=_STDERR_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_file),
            level="DEBUG",
            format=_FILE_FORMAT,
            mode="w",
            enqueue=True,
        )
        logger.info("Logging initialized path={}", log_file)


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable logs.

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
