"""Token storage for authentication sessions.

This module defines one contract (:class:`TokenStore`) and three backends
that share its external behaviour but differ in durability:

=====================  =================  ================  ===================
Backend                Survives restart   Shared across     Expiry
                                          instances
=====================  =================  ================  ===================
``MemoryTokenStore``   no                 no                on read + sweep
``FileTokenStore``     yes                no                on read + sweep
``RedisTokenStore``    yes                yes               native key TTL
=====================  =================  ================  ===================

The refresh policy lives in the base class so every backend behaves the
same: :meth:`TokenStore.get_access_token` refreshes transparently when less
than :data:`REFRESH_THRESHOLD_SECONDS` of lifetime remain and deletes the
record when that refresh fails, forcing the client to re-authenticate.

Concurrency
-----------
* Backend primitives are individually atomic (in-process lock, temp-file +
  ``os.replace``, single Redis commands).
* Refreshes are single-flight per authentication session inside a process:
  concurrent callers for the same id wait on a per-id lock and re-read the
  record instead of calling the provider again. No store-wide lock is ever
  held while a provider call is in flight.

Persistence errors (``OSError``, ``redis.RedisError``) always propagate;
undecodable records raise :class:`~fergus_mcp.auth.errors.TokenStorageError`.
"""

from __future__ import annotations

import json
import logging
import math
import os
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from hashlib import sha256
from pathlib import Path
from typing import Any, Final

import redis

from fergus_mcp.auth import oauth_client
from fergus_mcp.auth.clock import Clock, default_clock
from fergus_mcp.auth.errors import (
    ProviderError,
    RefreshTokenMissingError,
    TokenNotFoundError,
    TokenStorageError,
    TokenStoreError,
)
from fergus_mcp.auth.log_utils import short_id
from fergus_mcp.auth.models import OAuthTokens, TokenRecord
from fergus_mcp.config import OAuthConfig, SessionConfig

_LOG = logging.getLogger("fergus-mcp.auth.store")

# Refresh when fewer than 5 minutes of access-token lifetime remain.
REFRESH_THRESHOLD_SECONDS: Final[int] = 300
DEFAULT_RETENTION_SECONDS: Final[int] = 7 * 24 * 60 * 60
REDIS_KEY_PREFIX: Final[str] = "fergus-mcp:tokens:"
SESSIONS_DIR: Final[str] = ".sessions"

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def _decode_record(auth_session_id: str, raw: str | bytes) -> TokenRecord:
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("record is not a JSON object")
        return TokenRecord.from_dict(data)
    except (ValueError, KeyError, TypeError) as exc:
        raise TokenStorageError(
            auth_session_id, f"Stored token record is corrupt: {exc}"
        ) from exc


def _encode_record(record: TokenRecord) -> str:
    return json.dumps(record.to_dict(), separators=(",", ":"), sort_keys=True)


# --------------------------------------------------------------------------- #
# contract + shared refresh policy                                            #
# --------------------------------------------------------------------------- #


class TokenStore(ABC):
    """Keyed storage of :class:`TokenRecord` per authentication session id."""

    backend: str = "abstract"

    def __init__(
        self,
        oauth_config: OAuthConfig | None = None,
        *,
        clock: Clock = default_clock,
        refresh_threshold: int = REFRESH_THRESHOLD_SECONDS,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
    ) -> None:
        self.oauth_config = oauth_config
        self.refresh_threshold = refresh_threshold
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._locks_guard = threading.Lock()
        self._refresh_locks: dict[str, threading.RLock] = {}

    # ----- backend primitives ---------------------------------------------- #
    @abstractmethod
    def _load(self, auth_session_id: str) -> TokenRecord | None: ...

    @abstractmethod
    def _save(self, auth_session_id: str, record: TokenRecord) -> None: ...

    @abstractmethod
    def _remove(self, auth_session_id: str) -> None: ...

    @abstractmethod
    def _ids(self) -> list[str]: ...

    @abstractmethod
    def _remove_all(self) -> int: ...

    # ----- contract --------------------------------------------------------- #
    def store(self, auth_session_id: str, tokens: OAuthTokens) -> TokenRecord:
        """Write (or overwrite) the record for *auth_session_id*."""
        record = TokenRecord.from_grant(tokens, now=self._clock())
        self._save(auth_session_id, record)
        _LOG.info(
            "Stored tokens for session %s (%s), expires in %ss",
            short_id(auth_session_id),
            self.backend,
            tokens.expires_in,
        )
        return record

    def store_record(self, auth_session_id: str, record: TokenRecord) -> None:
        """Write an existing record verbatim (used for id rotation)."""
        self._save(auth_session_id, record)
        _LOG.debug("Copied token record to session %s", short_id(auth_session_id))

    def get_tokens(self, auth_session_id: str) -> TokenRecord | None:
        return self._load(auth_session_id)

    def has(self, auth_session_id: str) -> bool:
        return self._load(auth_session_id) is not None

    def expiry(self, auth_session_id: str) -> float | None:
        record = self._load(auth_session_id)
        return record.expires_at if record else None

    def is_expired(self, auth_session_id: str) -> bool:
        """True when the access token is expired or no record exists."""
        record = self._load(auth_session_id)
        if record is None:
            return True
        return record.is_expired(clock=self._clock)

    def delete(self, auth_session_id: str) -> None:
        # wait for an in-flight refresh so it cannot resurrect the record
        with self._refresh_lock(auth_session_id):
            self._remove(auth_session_id)
        with self._locks_guard:
            self._refresh_locks.pop(auth_session_id, None)
        _LOG.info("Deleted tokens for session %s", short_id(auth_session_id))

    def count(self) -> int:
        return len(self._ids())

    def clear_all(self) -> None:
        removed = self._remove_all()
        with self._locks_guard:
            self._refresh_locks.clear()
        _LOG.info("Cleared all %d session(s) from %s store", removed, self.backend)

    def get_access_token(self, auth_session_id: str) -> str | None:
        """Return a currently valid provider access token, or ``None``.

        Refreshes first when the token is close to expiry. If that refresh
        fails for any reason other than a storage fault, the record is
        deleted and ``None`` is returned so the client re-authenticates.
        """
        record = self._load(auth_session_id)
        if record is None:
            _LOG.debug("No tokens found for session %s", short_id(auth_session_id))
            return None

        if record.remaining(clock=self._clock) >= self.refresh_threshold:
            return record.access_token

        _LOG.info(
            "Token for session %s is expiring soon, attempting refresh",
            short_id(auth_session_id),
        )
        try:
            record = self.refresh_if_needed(auth_session_id)
        except (TokenNotFoundError, RefreshTokenMissingError, ProviderError) as exc:
            _LOG.warning(
                "Token refresh failed for session %s: %s",
                short_id(auth_session_id),
                exc,
            )
            self.delete(auth_session_id)
            return None
        if record.is_expired(clock=self._clock):
            # provider issued an already-expired token
            self.delete(auth_session_id)
            return None
        return record.access_token

    def refresh_if_needed(self, auth_session_id: str) -> TokenRecord:
        """Refresh the record when it is near expiry and return the current one.

        Raises
        ------
        TokenNotFoundError
            No record exists for *auth_session_id*.
        RefreshTokenMissingError
            The record is near expiry and carries no refresh token.
        ProviderError
            The identity provider rejected the refresh or was unreachable.
        """
        record = self._load(auth_session_id)
        if record is None:
            raise TokenNotFoundError(auth_session_id)
        if record.remaining(clock=self._clock) >= self.refresh_threshold:
            return record

        with self._refresh_lock(auth_session_id):
            # another caller may have refreshed while we waited
            latest = self._load(auth_session_id)
            if latest is None:
                raise TokenNotFoundError(auth_session_id)
            if latest.remaining(clock=self._clock) >= self.refresh_threshold:
                return latest
            if not latest.refresh_token:
                raise RefreshTokenMissingError(auth_session_id)

            tokens = self._refresh(latest.refresh_token)
            refreshed = TokenRecord.from_grant(tokens, now=self._clock())
            if not refreshed.refresh_token:
                refreshed = replace(refreshed, refresh_token=latest.refresh_token)
            self._save(auth_session_id, refreshed)

        _LOG.info(
            "Refreshed tokens for session %s (expires in %ss)",
            short_id(auth_session_id),
            tokens.expires_in,
        )
        return refreshed

    def cleanup_expired(self) -> int:
        """Remove records that can no longer produce a valid access token.

        A record is garbage once its access token has expired and it has no
        refresh token, or once it is older than the retention window.
        """
        now = self._clock()
        removed = 0
        for auth_session_id in self._ids():
            try:
                record = self._load(auth_session_id)
            except TokenStorageError:
                _LOG.warning(
                    "Removing corrupt token record %s", short_id(auth_session_id)
                )
                self._remove(auth_session_id)
                removed += 1
                continue
            if record is None:
                continue
            dead = record.expires_at <= now and not record.can_refresh
            if dead or (now - record.created_at) > self.retention_seconds:
                self._remove(auth_session_id)
                removed += 1
        if removed:
            _LOG.info("Cleaned up %d expired token record(s)", removed)
        return removed

    def close(self) -> None:
        """Release backend resources. Safe to call more than once."""

    # ----- helpers ---------------------------------------------------------- #
    def _refresh_lock(self, auth_session_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._refresh_locks.get(auth_session_id)
            if lock is None:
                lock = self._refresh_locks[auth_session_id] = threading.RLock()
            return lock

    def _refresh(self, refresh_token: str) -> OAuthTokens:
        if self.oauth_config is None:
            raise ProviderError(
                "Token refresh",
                error="not_configured",
                error_description="no OAuth client configuration",
            )
        return oauth_client.refresh_tokens(self.oauth_config, refresh_token)


# --------------------------------------------------------------------------- #
# in-process backend                                                          #
# --------------------------------------------------------------------------- #


class MemoryTokenStore(TokenStore):
    """Dictionary-backed store; contents vanish with the process."""

    backend = "memory"

    def __init__(self, oauth_config: OAuthConfig | None = None, **kwargs: Any) -> None:
        super().__init__(oauth_config, **kwargs)
        self._records: dict[str, TokenRecord] = {}
        self._lock = threading.Lock()

    def _load(self, auth_session_id: str) -> TokenRecord | None:
        with self._lock:
            return self._records.get(auth_session_id)

    def _save(self, auth_session_id: str, record: TokenRecord) -> None:
        with self._lock:
            self._records[auth_session_id] = record

    def _remove(self, auth_session_id: str) -> None:
        with self._lock:
            self._records.pop(auth_session_id, None)

    def _ids(self) -> list[str]:
        with self._lock:
            return list(self._records)

    def _remove_all(self) -> int:
        with self._lock:
            removed = len(self._records)
            self._records.clear()
        return removed


# --------------------------------------------------------------------------- #
# single-host file backend                                                    #
# --------------------------------------------------------------------------- #


def _atomic_write(path: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    try:
        with tmp.open("w", encoding="utf-8") as fh:
            fh.write(payload)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)  # atomic on POSIX
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


class FileTokenStore(TokenStore):
    """One JSON file per authentication session under ``<base_dir>/.sessions``.

    Writes are atomic (temp-file + ``os.replace``). The directory must not be
    shared by several processes: there is no cross-process refresh lock.
    """

    backend = "file"

    def __init__(
        self,
        oauth_config: OAuthConfig | None = None,
        base_dir: str | os.PathLike | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(oauth_config, **kwargs)
        self.sessions_path = Path(base_dir or Path.cwd()).expanduser() / SESSIONS_DIR
        self.sessions_path.mkdir(parents=True, exist_ok=True)

    def _path(self, auth_session_id: str) -> Path:
        # ids arrive from clients as codes / refresh tokens; never trust them
        # as file names
        if _SAFE_ID.match(auth_session_id):
            name = auth_session_id
        else:
            name = "h-" + sha256(auth_session_id.encode("utf-8")).hexdigest()
        return self.sessions_path / f"{name}.json"

    def _load(self, auth_session_id: str) -> TokenRecord | None:
        try:
            raw = self._path(auth_session_id).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return _decode_record(auth_session_id, raw)

    def has(self, auth_session_id: str) -> bool:
        return self._path(auth_session_id).exists()

    def _save(self, auth_session_id: str, record: TokenRecord) -> None:
        _atomic_write(self._path(auth_session_id), _encode_record(record))

    def _remove(self, auth_session_id: str) -> None:
        self._path(auth_session_id).unlink(missing_ok=True)

    def _ids(self) -> list[str]:
        return [p.stem for p in self.sessions_path.glob("*.json")]

    def _remove_all(self) -> int:
        removed = 0
        for p in self.sessions_path.glob("*.json"):
            p.unlink(missing_ok=True)
            removed += 1
        return removed


# --------------------------------------------------------------------------- #
# distributed backend                                                         #
# --------------------------------------------------------------------------- #


class RedisTokenStore(TokenStore):
    """Redis-backed store for multi-instance deployments.

    Each record is written with ``SETEX`` using the session timeout as TTL so
    that the refresh token survives long after the access token expires; Redis
    evicts abandoned sessions on its own.

    Parameters
    ----------
    redis_url:
        Connection URL, used when *redis_client* is not given.
    redis_client:
        Pre-configured client (e.g. ``fakeredis.FakeRedis`` in tests). The
        store does not close clients it did not create.
    """

    backend = "redis"

    def __init__(
        self,
        oauth_config: OAuthConfig | None = None,
        *,
        redis_url: str | None = None,
        redis_client: redis.Redis | None = None,
        key_prefix: str = REDIS_KEY_PREFIX,
        **kwargs: Any,
    ) -> None:
        super().__init__(oauth_config, **kwargs)
        if redis_client is None:
            if not redis_url:
                raise ValueError("redis_url or redis_client is required")
            redis_client = redis.Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                health_check_interval=30,
            )
            self._owns_client = True
        else:
            self._owns_client = False
        self._redis = redis_client
        self.key_prefix = key_prefix

    def _key(self, auth_session_id: str) -> str:
        return f"{self.key_prefix}{auth_session_id}"

    def _load(self, auth_session_id: str) -> TokenRecord | None:
        raw = self._redis.get(self._key(auth_session_id))
        if raw is None:
            return None
        return _decode_record(auth_session_id, raw)

    def has(self, auth_session_id: str) -> bool:
        return bool(self._redis.exists(self._key(auth_session_id)))

    def _save(self, auth_session_id: str, record: TokenRecord) -> None:
        ttl = max(
            self.retention_seconds,
            math.ceil(record.expires_at - self._clock()),
            1,
        )
        self._redis.setex(self._key(auth_session_id), ttl, _encode_record(record))

    def _remove(self, auth_session_id: str) -> None:
        self._redis.delete(self._key(auth_session_id))

    def _scan_keys(self) -> list[str]:
        keys = []
        for key in self._redis.scan_iter(match=f"{self.key_prefix}*"):
            keys.append(key.decode("utf-8") if isinstance(key, bytes) else key)
        return keys

    def _ids(self) -> list[str]:
        offset = len(self.key_prefix)
        return [key[offset:] for key in self._scan_keys()]

    def _remove_all(self) -> int:
        keys = self._scan_keys()
        if keys:
            self._redis.delete(*keys)
        return len(keys)

    def cleanup_expired(self) -> int:
        # Redis evicts keys through their TTL
        _LOG.debug("Redis handles token expiry natively; nothing to sweep")
        return 0

    def close(self) -> None:
        if not self._owns_client or self._redis is None:
            return
        self._redis.close()
        self._redis.connection_pool.disconnect()
        self._owns_client = False
        _LOG.info("Redis connection closed")


# --------------------------------------------------------------------------- #
# startup selection                                                           #
# --------------------------------------------------------------------------- #


def create_token_store(
    session: SessionConfig,
    oauth_config: OAuthConfig | None = None,
    *,
    clock: Clock = default_clock,
) -> TokenStore:
    """Instantiate the backend selected by ``SESSION_STORAGE``."""
    common: dict[str, Any] = {
        "clock": clock,
        "retention_seconds": session.timeout_seconds,
    }
    if session.storage == "redis":
        store: TokenStore = RedisTokenStore(
            oauth_config, redis_url=session.redis_url, **common
        )
    elif session.storage == "file":
        store = FileTokenStore(oauth_config, base_dir=session.storage_dir, **common)
    elif session.storage == "memory":
        store = MemoryTokenStore(oauth_config, **common)
    else:
        raise ValueError(f"Unknown token storage backend: {session.storage}")

    _LOG.info(
        "Token storage: %s (retention %d days)",
        store.backend,
        session.timeout_seconds // 86400,
    )
    return store


__all__ = [
    "REFRESH_THRESHOLD_SECONDS",
    "TokenStore",
    "TokenStoreError",
    "MemoryTokenStore",
    "FileTokenStore",
    "RedisTokenStore",
    "create_token_store",
]
