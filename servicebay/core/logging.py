from __future__ import annotations

import logging
import sys

from loguru import logger

_LOGGING_CONFIGURED = False

# Standard-library loggers of our dependencies and the level they run at.
_LIBRARY_LEVELS = {
    "sqlalchemy.engine": logging.WARNING,
    "apscheduler": logging.WARNING,
    "tzlocal": logging.ERROR,
}


def setup_logging(level: str = "INFO") -> None:
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s - %(message)s",
    )
    for name, library_level in _LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(library_level)

    logger.remove()
    logger.add(
        sys.stdout,
        level=level.upper(),
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level} | {name}:{function}:{line} - {message}",
        enqueue=True,
        diagnose=False,
        backtrace=False,
    )
    logger.debug("Logging configured level={level}", level=level.upper())

    _LOGGING_CONFIGURED = True
