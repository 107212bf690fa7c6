"""Logging utilities for Fergus MCP."""

from __future__ import annotations

import logging
import sys
from typing import TextIO

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def setup_logging(
    level: int | str = logging.INFO, stream: TextIO | None = None
) -> logging.Logger:
    """Configure the ``fergus-mcp`` logger hierarchy.

    Logs go to stderr by default so stdout stays free for protocol traffic.
    Calling this twice replaces the previous handler instead of stacking.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger("fergus-mcp")
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False

    # keep third-party noise below our own level
    for name in ("httpx", "urllib3", "mcp", "fastmcp"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    return logger


def mask_sensitive(value: str | None, keep_chars: int = 4) -> str:
    """Mask a secret, keeping only its last *keep_chars* characters.

    >>> mask_sensitive("abcdef123456")
    '********3456'
    """
    if not value:
        return ""
    if len(value) <= keep_chars:
        return "*" * len(value)
    return "*" * (len(value) - keep_chars) + value[-keep_chars:]
