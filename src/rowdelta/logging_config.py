"""
Logging configuration for rowdelta.

All modules log through children of the ``rowdelta`` logger so a single
handler and level cover commits, scans and metadata writes.
"""

import logging
import os
import sys
from typing import Optional


class RowDeltaLogger:
    """Centralized logger for rowdelta operations."""

    _instance: Optional[logging.Logger] = None
    _initialized = False

    @classmethod
    def get_logger(cls, name: str = "rowdelta") -> logging.Logger:
        """Get or create a rowdelta logger.

        Args:
            name: Logger name, usually ``__name__`` of the calling module

        Returns:
            Configured logger instance
        """
        if not cls._initialized:
            cls._setup_logging()

        return logging.getLogger(name)

    @classmethod
    def _setup_logging(cls) -> None:
        """Attach the stderr handler to the package logger once."""
        if cls._initialized:
            return

        logger = logging.getLogger("rowdelta")
        level = _level_from_env(os.getenv("ROWDELTA_LOG_LEVEL"), logging.INFO)
        logger.setLevel(level)

        if logger.handlers:
            cls._initialized = True
            return

        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)

        # Format: timestamp - level - module - message
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        console_handler.setFormatter(formatter)

        logger.addHandler(console_handler)

        cls._instance = logger
        cls._initialized = True

    @classmethod
    def set_level(cls, level: int) -> None:
        """Set logging level.

        Args:
            level: Logging level (logging.DEBUG, INFO, WARNING, ERROR, CRITICAL)
        """
        logger = cls.get_logger()
        logger.setLevel(level)
        for handler in logger.handlers:
            handler.setLevel(level)


def _level_from_env(value: Optional[str], default: int) -> int:
    if not value:
        return default
    if value.isdigit():
        return int(value)
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else default


def get_logger(name: str = "rowdelta") -> logging.Logger:
    """Get rowdelta logger.

    Args:
        name: Logger name

    Returns:
        Configured logger instance
    """
    return RowDeltaLogger.get_logger(name)
