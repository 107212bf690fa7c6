"""Shared fixtures for the OAuth proxy unit tests."""

from __future__ import annotations

from typing import Callable, List

import pytest

from fergus_mcp.auth import oauth_client
from fergus_mcp.auth.clock import ManualClock
from fergus_mcp.auth.errors import ProviderError
from fergus_mcp.auth.models import OAuthTokens
from fergus_mcp.config import OAuthConfig

# frozen at 2023-01-01T00:00:00Z
NOW = 1_672_531_200.0


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(NOW)


@pytest.fixture()
def oauth_config() -> OAuthConfig:
    return OAuthConfig(
        user_pool_id="ap-southeast-2_pool",
        client_id="app-client",
        client_secret="app-secret",
        region="ap-southeast-2",
        domain="auth.example.com",
        redirect_uri="https://mcp.example.com/oauth/callback",
    )


class FakeProvider:
    """Stand-in for the identity provider's token endpoint."""

    def __init__(self) -> None:
        self.refresh_calls: List[str] = []
        self.exchange_calls: List[tuple[str, str | None]] = []
        self.refresh_error: ProviderError | None = None
        self.exchange_error: ProviderError | None = None
        self.refresh_expires_in = 3600
        self.issue_refresh_token = True

    def refresh_tokens(self, config: OAuthConfig, refresh_token: str) -> OAuthTokens:
        self.refresh_calls.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        n = len(self.refresh_calls)
        return OAuthTokens(
            access_token=f"refreshed-access-{n}",
            refresh_token=f"rotated-refresh-{n}" if self.issue_refresh_token else None,
            expires_in=self.refresh_expires_in,
        )

    def exchange_code(
        self, config: OAuthConfig, code: str, code_verifier: str | None = None
    ) -> OAuthTokens:
        self.exchange_calls.append((code, code_verifier))
        if self.exchange_error is not None:
            raise self.exchange_error
        return OAuthTokens(
            access_token=f"provider-access-{code}",
            refresh_token=f"provider-refresh-{code}",
            id_token="provider-id-token",
            expires_in=3600,
        )


@pytest.fixture()
def provider(monkeypatch: pytest.MonkeyPatch) -> FakeProvider:
    """Patch the OAuth client adapter so no network call is ever made."""
    fake = FakeProvider()
    monkeypatch.setattr(oauth_client, "refresh_tokens", fake.refresh_tokens)
    monkeypatch.setattr(oauth_client, "exchange_code", fake.exchange_code)
    return fake


def make_tokens(
    access_token: str = "access-1",
    *,
    expires_in: int = 3600,
    refresh_token: str | None = "refresh-1",
) -> OAuthTokens:
    return OAuthTokens(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=expires_in,
    )


@pytest.fixture()
def tokens_factory() -> Callable[..., OAuthTokens]:
    return make_tokens
