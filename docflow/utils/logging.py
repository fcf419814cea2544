"""Logging helpers shared by every module."""

import logging
import os
import sys
from typing import Optional

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_configured = False


def _configure_root() -> None:
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))

    root = logging.getLogger("docflow")
    root.addHandler(handler)
    root.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    root.propagate = False
    _configured = True


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Return a module logger under the ``docflow`` hierarchy.

    Args:
        name: Usually ``__name__`` of the calling module
        level: Optional level override (e.g. "DEBUG")

    Returns:
        Configured logger instance
    """
    _configure_root()

    logger = logging.getLogger(name if name.startswith("docflow") else f"docflow.{name}")
    if level:
        logger.setLevel(level.upper())
    return logger
