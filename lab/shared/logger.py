"""
Logging for the pipeline lab backend.

Every backend module logs under the ``lab`` logger, so a single level (the
``LAB_LOG_LEVEL`` setting) covers sessions, the engine, the HTTP layer and
WebSocket streaming alike.

Usage:
    from lab.shared.logger import get_logger

    logger = get_logger(__name__)
    logger.info("Session %s loaded engine %s", session_id, version)
    logger.warning("Share request returned status %d", status)
"""

import logging
import sys
from typing import IO, Optional

LAB_LOGGER = "lab"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ValueError(f"unknown log level {name!r}")
    return level


def setup_logging(level: str = "INFO", stream: Optional[IO[str]] = None) -> logging.Logger:
    """Attach the lab handler to the ``lab`` logger and set its level.

    The handler is installed once; later calls (one per created app) only
    change the level. Lab records do not propagate to the root logger, which
    is left to uvicorn.

    Raises:
        ValueError: If ``level`` is not a logging level name.
    """
    lab_logger = logging.getLogger(LAB_LOGGER)
    lab_logger.setLevel(_level(level))
    if not any(getattr(handler, "lab_handler", False) for handler in lab_logger.handlers):
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
        handler.lab_handler = True
        lab_logger.addHandler(handler)
        lab_logger.propagate = False
    return lab_logger


def get_logger(name: str) -> logging.Logger:
    """Return the logger for module ``name`` inside the ``lab`` namespace.

    Modules outside the ``lab`` package (``main``, ``websocket.manager``) are
    nested under it.
    """
    if name == LAB_LOGGER or name.startswith(LAB_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LAB_LOGGER}.{name}")
