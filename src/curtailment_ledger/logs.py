"""Loguru sink setup shared by the CLI and the status API."""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    """Replace the default loguru sink with stderr and an optional file."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
    if log_file is not None:
        logger.add(
            str(log_file),
            level="DEBUG",
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )
