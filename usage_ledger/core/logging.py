"""
Logging setup.

Thin wrapper over loguru so every module logs through a named, bound logger.
"""

import sys
from functools import lru_cache
from typing import Optional

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> - <level>{message}</level>"
)

logger.configure(extra={"name": "usage_ledger"})


@lru_cache
def get_logger(name: str):
    """Return a logger bound to ``name`` (shown in every record)."""
    return logger.bind(name=name)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Replace the default sink with a stderr sink and an optional file sink.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path of a rotating log file
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT, colorize=True)
    if log_file:
        logger.add(
            log_file,
            level=level.upper(),
            format=LOG_FORMAT,
            rotation="10 MB",
            retention="14 days",
            enqueue=True,
        )
    logger.bind(name=__name__).info("Logging initialized at level {}", level.upper())
