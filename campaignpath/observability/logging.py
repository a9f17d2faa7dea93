"""Process-wide logging setup for campaignpath modules."""

from __future__ import annotations

import logging
import os
from typing import Final

_HANDLER_ATTACHED: bool = False
_FORMAT: Final[str] = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_DATE_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S"

# Libraries whose INFO chatter drowns out analysis progress lines
_QUIET_LOGGERS: Final[tuple[str, ...]] = ("uvicorn.access", "httpx")


def _resolve_level(level_name: str | None = None) -> int:
    name = (level_name or os.getenv("CAMPAIGNPATH_LOG_LEVEL", "INFO")).upper()
    return getattr(logging, name, logging.INFO)


def configure_logging(level_name: str | None = None) -> int:
    """
    Attach the stream handler to the root logger once and apply the level.

    Side Effects:
        - Adds a StreamHandler to the root logger on first call
        - Sets root logger level (re-read from env on every call)
        - Raises quiet third-party loggers to WARNING
    """
    global _HANDLER_ATTACHED

    level = _resolve_level(level_name)
    root = logging.getLogger()

    if not _HANDLER_ATTACHED:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT))
        root.addHandler(handler)
        for noisy in _QUIET_LOGGERS:
            logging.getLogger(noisy).setLevel(max(level, logging.WARNING))
        _HANDLER_ATTACHED = True

    root.setLevel(level)
    return level


def get_logger(name: str) -> logging.Logger:
    """Return a module logger sharing the root stream handler."""
    level = configure_logging()
    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger
