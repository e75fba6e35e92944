"""Letterboxd watchlist addon for Stremio."""

from __future__ import annotations

import logging
import os
from typing import Optional

LOGGER_NAME = "letterboxio"
# Thread name tells request handlers apart from the action queue worker.
LOG_FORMAT = "[%(asctime)s] %(levelname)s [%(threadName)s] %(name)s: %(message)s"


def _level_from_env() -> int:
    name = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Package logger, or its ``letterboxio.<name>`` child."""
    root = logging.getLogger(LOGGER_NAME)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
        root.addHandler(handler)
        root.setLevel(_level_from_env())
    return root.getChild(name) if name else root
