"""Logging setup for command-line entry points.

Library code logs through ``from loguru import logger`` and never configures
sinks; scripts call ``configure_logging`` once at startup.
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger


LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Replace loguru's default sink with a stderr sink and an optional file sink.

    Args:
        level: Minimum level for the stderr sink.
        log_file: Path of a DEBUG-level file sink, rotated at 10 MB and
            kept for 7 days.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(log_file, level="DEBUG", rotation="10 MB", retention="7 days", enqueue=True)
        logger.debug(f"Logging to {log_file}")
