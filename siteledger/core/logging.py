"""
Logging setup shared by the API process and scripts.

Usage:
    from siteledger.core.logging import setup_logging
    setup_logging()
    logger = logging.getLogger(__name__)
"""

import logging
import sys

from siteledger.core.config import settings


LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Libraries that log every query or connection event
NOISY_LOGGERS = [
    "pymongo",
    "motor",
    "httpx",
    "httpcore",
    "asyncio",
]


def setup_logging(level: str | None = None) -> logging.Logger:
    """Configure the root logger with a single stdout handler.

    Args:
        level: Level name, defaults to settings.LOG_LEVEL

    Returns:
        The configured root logger
    """
    level_name = (level or settings.LOG_LEVEL).upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(level_name)

    # Replace our own handler only, so a second call does not duplicate output
    for existing in list(root_logger.handlers):
        if getattr(existing, "siteledger", False):
            root_logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.siteledger = True
    handler.setFormatter(logging.Formatter(settings.LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    root_logger.addHandler(handler)

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    root_logger.info("Logging initialised at %s", level_name)
    return root_logger
