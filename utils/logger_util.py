"""
Logging helpers for LocalMind.

Every module logger is created at import time, before the CLI has parsed
`--log-level`, so the configured names are tracked and `set_log_level`
re-levels all of them at once.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional, Set

_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LEVEL_ENV = "LOCALMIND_LOG_LEVEL"

_configured: Set[str] = set()


def _resolve_level(level: str) -> int:
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level {level!r}")
    return resolved


def configure_logger(name: str, level: str = "INFO") -> logging.Logger:
    """
    Configure and return a namespaced logger.

    Args:
        name: Logical name of the logger (e.g., "core.lifecycle").
        level: Logging level expressed as a string.
    Returns:
        Logger with a single stdout handler attached.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(_resolve_level(level))
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False
    _configured.add(name)
    return logger


def get_logger(name: str, *, level: Optional[str] = None) -> logging.Logger:
    """
    Retrieve a configured logger.

    The level falls back to `LOCALMIND_LOG_LEVEL` and then INFO.
    """
    return configure_logger(name, level or os.getenv(LEVEL_ENV, "INFO"))


def set_log_level(level: str) -> None:
    """Apply `level` to every logger configured so far; raises `ValueError` for unknown names."""
    resolved = _resolve_level(level)
    for name in sorted(_configured):
        logging.getLogger(name).setLevel(resolved)
