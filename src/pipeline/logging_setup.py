"""Loguru sink configuration for the CLI and stage runner."""

from __future__ import annotations

import sys

from loguru import logger

CONSOLE_FORMAT = "<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}"


def configure_logging(level: str = "INFO", json: bool = False) -> None:
    """
    Replace the default loguru sink with a single stderr sink.

    Args:
        level: Minimum level (DEBUG, INFO, WARNING, ERROR).
        json: Emit one serialized JSON record per line instead of the console layout.
    """
    logger.remove()
    if json:
        logger.add(sys.stderr, level=level.upper(), serialize=True)
        return
    logger.add(sys.stderr, level=level.upper(), format=CONSOLE_FORMAT)
