"""
Logging setup for strata.

Library modules log through ``get_logger(__name__)``. The first call installs
one stderr handler on the root logger unless the host application (or
pytest) already installed handlers. The CLI then calls
:func:`configure_logging` with the level resolved from settings.

Environment overrides:
- ``STRATA_LOG_LEVEL``: level used when none is passed
- ``STRATA_LOG_FORMAT``: line format for the installed handler
- ``NO_COLOR``: disable level colours on terminals
"""

import logging
import os
import sys
from typing import ClassVar

DEFAULT_LEVEL = "INFO"
DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured_level: str | int | None = None


class _LevelColorFormatter(logging.Formatter):
    COLORS: ClassVar[dict[str, str]] = {
        "DEBUG": "\x1b[37m",  # light gray
        "INFO": "\x1b[32m",  # green
        "WARNING": "\x1b[33m",  # yellow
        "ERROR": "\x1b[31m",  # red
        "CRITICAL": "\x1b[41m",  # red background
    }
    RESET: ClassVar[str] = "\x1b[0m"

    def __init__(self, fmt: str, use_color: bool):
        super().__init__(fmt=fmt, datefmt=DATE_FORMAT)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname) if self.use_color else None
        if color is None:
            return super().format(record)
        levelname = record.levelname
        record.levelname = f"{color}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


def _use_color() -> bool:
    return sys.stderr.isatty() and os.getenv("NO_COLOR") is None


def configure_logging(level: str | int | None = None) -> str | int:
    """Set the root level, installing the strata handler on first use.

    Calling again with the same level is a no-op; a different level is
    applied to the root logger and every handler keeps its formatter.

    Returns:
        The level that is now in effect
    """
    global _configured_level

    if level is None:
        level = os.getenv("STRATA_LOG_LEVEL", DEFAULT_LEVEL)
    if isinstance(level, str):
        level = level.upper()
    if _configured_level == level:
        return level

    root = logging.getLogger()
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(_LevelColorFormatter(os.getenv("STRATA_LOG_FORMAT", DEFAULT_FORMAT), _use_color()))
        root.addHandler(handler)
    # aiosqlite logs every statement at DEBUG
    logging.getLogger("aiosqlite").setLevel(max(logging.INFO, root.level))
    _configured_level = level
    return level


def get_logger(name: str) -> logging.Logger:
    """Return a module-scoped logger. Its level follows the root logger."""
    if _configured_level is None:
        configure_logging()
    return logging.getLogger(name)
