"""
Logging utilities.

Every module logs through ``get_logger(__name__)``. The starting level
comes from ``PYKNOWLEDGE_LOG_LEVEL`` (INFO when unset) and can be changed
later with :func:`set_log_level`.
"""

import logging
import os
import sys

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_LEVEL_ENV = 'PYKNOWLEDGE_LOG_LEVEL'
PACKAGE_LOGGER = 'pyknowledge'


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level

    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger writing to stderr
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
        try:
            level = _resolve_level(os.environ.get(LOG_LEVEL_ENV, 'INFO'))
        except ValueError:
            level = logging.INFO
        logger.setLevel(level)

    return logger


def set_log_level(level: int | str) -> None:
    """
    Set the log level for every pyknowledge logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Raises:
        ValueError: Unknown level name
    """
    level = _resolve_level(level)

    logging.getLogger(PACKAGE_LOGGER).setLevel(level)
    for name, logger in logging.Logger.manager.loggerDict.items():
        if name.startswith(PACKAGE_LOGGER + '.') and isinstance(logger, logging.Logger):
            logger.setLevel(level)
