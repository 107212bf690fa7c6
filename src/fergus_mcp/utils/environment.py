"""Utility functions for reading configuration from the environment."""

import logging
import os
from typing import Final, Tuple

logger = logging.getLogger("fergus-mcp.utils.environment")

_TRUTHY: Final[Tuple[str, ...]] = ("true", "1", "yes", "y", "on")


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def env_flag(name: str, default: bool = False) -> bool:
    """Return True if ``name`` is set to a truthy value (``default`` when unset)."""
    raw = os.getenv(name)
    if raw is None:
        return default
    return _truthy(raw)


def env_int(name: str, default: int) -> int:
    """Parse an integer variable, falling back to *default* when unset.

    A value that is present but not an integer is a configuration error and
    raises ``ValueError`` instead of being silently replaced.
    """
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def env_list(name: str, sep: str = ",") -> list[str] | None:
    """Split a delimited variable into a list, or ``None`` when unset/empty."""
    raw = os.getenv(name)
    if not raw or not raw.strip():
        return None
    items = [item.strip() for item in raw.split(sep) if item.strip()]
    return items or None


def missing_env(*names: str) -> list[str]:
    """Return the subset of *names* that are unset or blank."""
    missing = [n for n in names if not (os.getenv(n) or "").strip()]
    if missing:
        logger.debug("Missing environment variables: %s", ", ".join(missing))
    return missing
