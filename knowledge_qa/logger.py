"""Application-level logging utilities.

``KNOWLEDGE_QA_LOG_LEVEL`` (a level name such as ``warning``) sets the
level. Without it, ``DEBUG_RAG=true`` switches to DEBUG and the default is
INFO.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Marks handlers installed here so re-configuration replaces only them
_HANDLER_TAG = "_knowledge_qa_handler"


def resolve_level() -> int:
    """Log level from the environment."""
    name = os.getenv("KNOWLEDGE_QA_LOG_LEVEL", "").strip().upper()
    if name:
        level = logging.getLevelName(name)
        if isinstance(level, int):
            return level
    if os.getenv("DEBUG_RAG", "false").lower() == "true":
        return logging.DEBUG
    return logging.INFO


def setup_logger(name: str = "knowledge_qa", level: Optional[int] = None) -> logging.Logger:
    """Attach a stdout handler to ``name``; safe to call repeatedly."""
    level = resolve_level() if level is None else level
    logger = logging.getLogger(name)

    for existing in [h for h in logger.handlers if getattr(h, _HANDLER_TAG, False)]:
        logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    setattr(handler, _HANDLER_TAG, True)
    logger.addHandler(handler)

    logger.setLevel(level)
    logger.propagate = False
    return logger


LOGGER: logging.Logger = setup_logger()

__all__ = ["LOGGER", "resolve_level", "setup_logger"]
