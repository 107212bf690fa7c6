"""Structured logging helpers for OAuth proxy components.

This module restricts **which** contextual attributes are attached to log
records so that secrets never leak. The adapter only injects these
*non-sensitive* fields:

- ``auth_session_id`` – authentication session id (first 6 chars kept)
- ``session_id``      – MCP transport session id
- ``correlation_id``  – request correlation id set by the HTTP middleware

Usage
-----
>>> from fergus_mcp.auth.log_utils import get_auth_logger
>>> log = get_auth_logger(
...     base_logger_name="fergus-mcp.auth.proxy",
...     auth_session_id="123e4567-e89b-12d3-a456-426614174000",
... )
>>> log.info("Stored tokens")
INFO fergus-mcp.auth.proxy auth_session_id=123e45 ...
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping


class _AuthLoggerAdapter(logging.LoggerAdapter):
    """Inject whitelisted auth context into log records."""

    extra_keys = ("auth_session_id", "session_id", "correlation_id")

    def __init__(self, logger: logging.Logger, extra: Mapping[str, Any] | None = None):
        extra_clean: MutableMapping[str, Any] = {}
        for k in self.extra_keys:
            if not extra or extra.get(k) is None:
                continue
            if k == "auth_session_id":
                # the full id is a bearer credential
                extra_clean[k] = str(extra[k])[:6]
            else:
                extra_clean[k] = extra[k]
        super().__init__(logger, extra_clean)

    def process(self, msg: str, kwargs: MutableMapping[str, Any]):
        if "extra" not in kwargs or kwargs["extra"] is None:
            kwargs["extra"] = {}
        for k, v in self.extra.items():
            kwargs["extra"].setdefault(k, v)
        return msg, kwargs


def get_auth_logger(
    *,
    base_logger_name: str = "fergus-mcp.auth",
    auth_session_id: str | None = None,
    session_id: str | None = None,
    correlation_id: str | None = None,
) -> logging.LoggerAdapter:
    """Return a LoggerAdapter pre-filled with auth context."""
    logger = logging.getLogger(base_logger_name)
    return _AuthLoggerAdapter(
        logger,
        {
            "auth_session_id": auth_session_id,
            "session_id": session_id,
            "correlation_id": correlation_id,
        },
    )


def short_id(value: str | None) -> str:
    """Truncate an identifier for log messages (``abc123****``)."""
    if not value:
        return "-"
    return f"{value[:6]}****"
