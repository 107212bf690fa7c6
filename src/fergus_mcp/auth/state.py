"""CSRF ``state`` cache for in-flight authorization flows.

Each call to :meth:`OAuthProxy.begin` stores a
:class:`~fergus_mcp.auth.models.PendingAuthorization` under a freshly
generated ``state`` value. The callback must :meth:`StateCache.consume` it:
consumption is an atomic get-and-delete, so a given state completes the flow
at most once even if the provider delivers the callback twice.

Entries older than ten minutes are invisible immediately (the backing
``cachetools.TTLCache`` checks expiry on every read) and physically removed
by :meth:`StateCache.sweep`.

Logging
-------
State values are never logged, only their first characters.
"""

from __future__ import annotations

import logging
import threading
from typing import Final

from cachetools import TTLCache

from fergus_mcp.auth.clock import Clock, default_clock
from fergus_mcp.auth.log_utils import short_id
from fergus_mcp.auth.models import PENDING_AUTHORIZATION_TTL, PendingAuthorization

_LOG = logging.getLogger("fergus-mcp.auth.state")

_MAX_PENDING: Final[int] = 10_000


class StateCache:
    """Thread-safe keyed store of pending authorizations."""

    def __init__(
        self,
        *,
        ttl_seconds: int = PENDING_AUTHORIZATION_TTL,
        maxsize: int = _MAX_PENDING,
        clock: Clock = default_clock,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: TTLCache[str, PendingAuthorization] = TTLCache(
            maxsize=maxsize, ttl=ttl_seconds, timer=clock
        )

    def put(self, pending: PendingAuthorization) -> None:
        with self._lock:
            self._entries[pending.state] = pending
        _LOG.debug("Stored pending authorization state=%s", short_id(pending.state))

    def consume(self, state: str) -> PendingAuthorization | None:
        """Return and remove the entry for *state* (``None`` if absent/expired)."""
        with self._lock:
            pending = self._entries.pop(state, None)
        if pending is not None and pending.is_expired(clock=self._clock):
            # the entry outlived its own ttl_seconds before the cache evicted it
            pending = None
        if pending is None:
            _LOG.debug("No pending authorization for state=%s", short_id(state))
        return pending

    def sweep(self) -> int:
        """Drop expired entries and return how many were removed."""
        with self._lock:
            removed = len(self._entries.expire())
        if removed:
            _LOG.info("Cleaned up %d expired state(s)", removed)
        return removed

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)

    def __contains__(self, state: object) -> bool:
        with self._lock:
            return state in self._entries
