"""Logging setup for the shiftclock service.

Every module obtains its logger through ``setup_logger(__name__)`` so
kiosk punches, supervisor corrections and reconciliation runs share one
format. ``set_log_level`` applies the configured level to all of them.
"""

import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_configured: set[str] = set()


def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Create and configure a logger with the service format.

    Args:
        name: Logger name, typically ``__name__`` of the calling module.
        level: Logging level (default: ``logging.INFO``).

    Returns:
        Configured logger instance.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.setLevel(level)
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    _configured.add(name)
    return logger


def set_log_level(level: str | int) -> None:
    """Apply a level to every logger created through ``setup_logger``.

    Args:
        level: Level name (``"DEBUG"``) or numeric level.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    for name in _configured:
        logging.getLogger(name).setLevel(level)
