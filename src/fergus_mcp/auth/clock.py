"""Clock abstraction for testable time handling in the OAuth proxy.

Every expiry decision inside :mod:`fergus_mcp.auth` (token refresh threshold,
CSRF state window, idle session eviction) depends on an injected ``Clock``
instead of calling ``time.time()`` directly, so tests can freeze or advance
time deterministically.

Example
-------
>>> from fergus_mcp.auth.clock import default_clock
>>> isinstance(default_clock(), float)
True
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Callable protocol returning *seconds* since the UNIX epoch."""

    def __call__(self) -> float: ...


def default_clock() -> float:
    """Default implementation that delegates to ``time.time()``."""
    return time.time()


class ManualClock:
    """Settable clock for tests and simulations.

    >>> clock = ManualClock(1_000.0)
    >>> clock.advance(30)
    >>> clock()
    1030.0
    """

    def __init__(self, now: float = 0.0) -> None:
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
