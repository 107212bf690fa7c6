"""Unit tests for environment-driven configuration."""

from __future__ import annotations

import pytest

from fergus_mcp.config import (
    DEFAULT_SCOPES,
    DEFAULT_SESSION_TIMEOUT_MS,
    HttpConfig,
    OAuthConfig,
    SessionConfig,
)

OAUTH_ENV = {
    "COGNITO_USER_POOL_ID": "ap-southeast-2_pool",
    "COGNITO_CLIENT_ID": "app-client",
    "COGNITO_CLIENT_SECRET": "app-secret",
    "COGNITO_REGION": "ap-southeast-2",
    "COGNITO_DOMAIN": "auth.example.com",
    "OAUTH_REDIRECT_URI": "https://mcp.example.com/oauth/callback",
}

OPTIONAL_ENV = (
    "OAUTH_SCOPES",
    "SESSION_STORAGE",
    "SESSION_TIMEOUT_MS",
    "SESSION_STORAGE_DIR",
    "REDIS_URL",
    "HTTP_PORT",
    "HTTP_HOST",
    "PUBLIC_URL",
    "ALLOWED_ORIGINS",
    "ALLOWED_HOSTS",
    "MCP_VERBOSE",
    "MCP_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in (*OAUTH_ENV, *OPTIONAL_ENV):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture()
def oauth_env(clean_env: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name, value in OAUTH_ENV.items():
        clean_env.setenv(name, value)
    return clean_env


def test_oauth_config_from_env(oauth_env) -> None:
    config = OAuthConfig.from_env()

    assert config.client_id == "app-client"
    assert config.scopes == DEFAULT_SCOPES
    assert config.authorize_endpoint == "https://auth.example.com/oauth2/authorize"
    assert config.token_endpoint == "https://auth.example.com/oauth2/token"
    assert config.revoke_endpoint == "https://auth.example.com/oauth2/revoke"


def test_oauth_config_custom_scopes_and_scheme(oauth_env) -> None:
    oauth_env.setenv("OAUTH_SCOPES", "openid  profile")
    oauth_env.setenv("COGNITO_DOMAIN", "http://localhost:9229/")

    config = OAuthConfig.from_env()

    assert config.scopes == ("openid", "profile")
    assert config.base_url == "http://localhost:9229"


def test_oauth_config_lists_missing_variables(oauth_env) -> None:
    oauth_env.delenv("COGNITO_CLIENT_SECRET")
    oauth_env.setenv("COGNITO_DOMAIN", "  ")

    with pytest.raises(ValueError) as excinfo:
        OAuthConfig.from_env()

    message = str(excinfo.value)
    assert "COGNITO_CLIENT_SECRET" in message
    assert "COGNITO_DOMAIN" in message
    assert "COGNITO_CLIENT_ID" not in message


def test_session_config_defaults() -> None:
    config = SessionConfig.from_env()

    assert config.storage == "memory"
    assert config.timeout_ms == DEFAULT_SESSION_TIMEOUT_MS
    assert config.timeout_seconds == 7 * 24 * 60 * 60


def test_session_config_redis_requires_url(clean_env) -> None:
    clean_env.setenv("SESSION_STORAGE", "Redis")

    with pytest.raises(ValueError, match="REDIS_URL"):
        SessionConfig.from_env()

    clean_env.setenv("REDIS_URL", "redis://localhost:6379/0")
    config = SessionConfig.from_env()
    assert config.storage == "redis"
    assert config.redis_url == "redis://localhost:6379/0"


def test_session_config_rejects_unknown_backend(clean_env) -> None:
    clean_env.setenv("SESSION_STORAGE", "sqlite")

    with pytest.raises(ValueError, match="SESSION_STORAGE"):
        SessionConfig.from_env()


def test_session_config_invalid_timeout(clean_env) -> None:
    clean_env.setenv("SESSION_TIMEOUT_MS", "soon")

    with pytest.raises(ValueError, match="SESSION_TIMEOUT_MS must be an integer"):
        SessionConfig.from_env()


def test_http_config_from_env(oauth_env) -> None:
    oauth_env.setenv("HTTP_PORT", "8080")
    oauth_env.setenv("PUBLIC_URL", "https://mcp.example.com/")
    oauth_env.setenv("ALLOWED_ORIGINS", "https://claude.ai, https://example.com")
    oauth_env.setenv("SESSION_STORAGE", "file")
    oauth_env.setenv("SESSION_STORAGE_DIR", "/var/lib/fergus")

    config = HttpConfig.from_env()

    assert config.port == 8080
    assert config.host == "0.0.0.0"
    assert config.public_url == "https://mcp.example.com"
    assert config.allowed_origins == ["https://claude.ai", "https://example.com"]
    assert config.allowed_hosts is None
    assert config.session.storage == "file"
    assert config.session.storage_dir == "/var/lib/fergus"
    assert config.log_level == "INFO"


@pytest.mark.parametrize(
    "env, expected",
    [
        ({"MCP_VERBOSE": "true"}, "DEBUG"),
        ({"MCP_LOG_LEVEL": "warning"}, "WARNING"),
        ({"MCP_VERBOSE": "1", "MCP_LOG_LEVEL": "ERROR"}, "DEBUG"),
        ({"MCP_VERBOSE": "no"}, "INFO"),
    ],
)
def test_http_config_log_level(oauth_env, env, expected) -> None:
    for name, value in env.items():
        oauth_env.setenv(name, value)

    assert HttpConfig.from_env().log_level == expected
