"""Utility helpers for Fergus MCP."""

from .environment import env_flag, env_int, env_list, missing_env
from .logging import mask_sensitive, setup_logging

__all__ = [
    "env_flag",
    "env_int",
    "env_list",
    "missing_env",
    "mask_sensitive",
    "setup_logging",
]
