"""Configuration for the Fergus MCP HTTP server and its OAuth proxy.

All values come from environment variables and are loaded once at startup
into frozen dataclasses. Nothing else in the package reads ``os.environ``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Final, Literal

from fergus_mcp.utils.environment import env_flag, env_int, env_list, missing_env

StorageBackend = Literal["memory", "file", "redis"]

DEFAULT_SCOPES: Final[tuple[str, ...]] = ("openid", "email", "profile")
# 7 days
DEFAULT_SESSION_TIMEOUT_MS: Final[int] = 7 * 24 * 60 * 60 * 1000

_OAUTH_REQUIRED: Final[tuple[str, ...]] = (
    "COGNITO_USER_POOL_ID",
    "COGNITO_CLIENT_ID",
    "COGNITO_CLIENT_SECRET",
    "COGNITO_REGION",
    "COGNITO_DOMAIN",
    "OAUTH_REDIRECT_URI",
)


@dataclass(frozen=True)
class OAuthConfig:
    """Identity provider (Cognito user pool app client) settings."""

    user_pool_id: str
    client_id: str
    client_secret: str
    region: str
    domain: str
    redirect_uri: str
    scopes: tuple[str, ...] = DEFAULT_SCOPES

    @property
    def base_url(self) -> str:
        domain = self.domain.rstrip("/")
        if domain.startswith(("http://", "https://")):
            return domain
        return f"https://{domain}"

    @property
    def authorize_endpoint(self) -> str:
        return f"{self.base_url}/oauth2/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self.base_url}/oauth2/token"

    @property
    def revoke_endpoint(self) -> str:
        return f"{self.base_url}/oauth2/revoke"

    @classmethod
    def from_env(cls) -> "OAuthConfig":
        missing = missing_env(*_OAUTH_REQUIRED)
        if missing:
            raise ValueError(
                "OAuth configuration is incomplete. Missing environment variables: "
                + ", ".join(missing)
            )
        scopes = env_list("OAUTH_SCOPES", sep=" ")
        return cls(
            user_pool_id=os.environ["COGNITO_USER_POOL_ID"],
            client_id=os.environ["COGNITO_CLIENT_ID"],
            client_secret=os.environ["COGNITO_CLIENT_SECRET"],
            region=os.environ["COGNITO_REGION"],
            domain=os.environ["COGNITO_DOMAIN"],
            redirect_uri=os.environ["OAUTH_REDIRECT_URI"],
            scopes=tuple(scopes) if scopes else DEFAULT_SCOPES,
        )


@dataclass(frozen=True)
class SessionConfig:
    """Token storage backend and session lifetime settings."""

    storage: StorageBackend = "memory"
    timeout_ms: int = DEFAULT_SESSION_TIMEOUT_MS
    redis_url: str | None = None
    storage_dir: str | None = None

    @property
    def timeout_seconds(self) -> int:
        return self.timeout_ms // 1000

    @classmethod
    def from_env(cls) -> "SessionConfig":
        storage = (os.getenv("SESSION_STORAGE") or "memory").strip().lower()
        if storage not in ("memory", "file", "redis"):
            raise ValueError(
                f"SESSION_STORAGE must be one of memory, file, redis (got {storage!r})"
            )
        redis_url = os.getenv("REDIS_URL") or None
        if storage == "redis" and not redis_url:
            raise ValueError("REDIS_URL is required when SESSION_STORAGE=redis")
        return cls(
            storage=storage,  # type: ignore[arg-type]
            timeout_ms=env_int("SESSION_TIMEOUT_MS", DEFAULT_SESSION_TIMEOUT_MS),
            redis_url=redis_url,
            storage_dir=os.getenv("SESSION_STORAGE_DIR") or None,
        )


@dataclass(frozen=True)
class HttpConfig:
    """HTTP server settings plus the OAuth and session sections."""

    oauth: OAuthConfig
    session: SessionConfig = field(default_factory=SessionConfig)
    port: int = 3100
    host: str = "0.0.0.0"
    public_url: str | None = None
    allowed_origins: list[str] | None = None
    allowed_hosts: list[str] | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "HttpConfig":
        return cls(
            oauth=OAuthConfig.from_env(),
            session=SessionConfig.from_env(),
            port=env_int("HTTP_PORT", 3100),
            host=os.getenv("HTTP_HOST") or "0.0.0.0",
            public_url=(os.getenv("PUBLIC_URL") or "").rstrip("/") or None,
            allowed_origins=env_list("ALLOWED_ORIGINS"),
            allowed_hosts=env_list("ALLOWED_HOSTS"),
            log_level=(
                "DEBUG"
                if env_flag("MCP_VERBOSE")
                else (os.getenv("MCP_LOG_LEVEL") or "INFO").upper()
            ),
        )
