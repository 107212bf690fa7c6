"""Unit tests for the OAuth proxy protocol handler.

Coverage:
* begin → provider authorize URL with local state + PKCE challenge
* complete → single-use state, denial, provider failure, client redirect
* issue_token → authorization_code / refresh_token grants, rotation invariant
* dynamic registration, discovery metadata and revocation
"""

from __future__ import annotations

import uuid
from urllib.parse import parse_qs, urlsplit

import pytest

from fergus_mcp.auth import oauth_client
from fergus_mcp.auth.errors import (
    AuthorizationDeniedError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidStateError,
    ProviderError,
    ServerError,
    UnsupportedGrantTypeError,
)
from fergus_mcp.auth.pkce import code_challenge_s256
from fergus_mcp.auth.proxy import DEFAULT_CLIENT_REDIRECT_URI, OAuthProxy
from fergus_mcp.auth.sessions import SessionRegistry
from fergus_mcp.auth.state import StateCache
from fergus_mcp.auth.store import MemoryTokenStore


@pytest.fixture()
def store(oauth_config, clock) -> MemoryTokenStore:
    return MemoryTokenStore(oauth_config, clock=clock)


@pytest.fixture()
def sessions(clock) -> SessionRegistry:
    return SessionRegistry(clock=clock)


@pytest.fixture()
def proxy(oauth_config, store, sessions, clock) -> OAuthProxy:
    return OAuthProxy(
        oauth_config, store, StateCache(clock=clock), sessions, clock=clock
    )


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def _begin(proxy: OAuthProxy, **overrides) -> str:
    """Start a flow and return the local state sent to the provider."""
    params = {
        "client_id": "client-1",
        "client_redirect_uri": "https://client.example.com/cb",
        "client_state": "client-state",
        "client_code_challenge": "client-challenge",
    }
    params.update(overrides)
    return _query(proxy.begin(**params))["state"]


# --------------------------------------------------------------------------- #
# begin                                                                       #
# --------------------------------------------------------------------------- #
def test_begin_stores_pending_authorization(proxy: OAuthProxy) -> None:
    url = proxy.begin(
        "client-1", "https://client.example.com/cb", "client-state", "challenge"
    )

    assert url.startswith("https://auth.example.com/oauth2/authorize?")
    query = _query(url)
    assert query["code_challenge_method"] == "S256"
    assert query["state"] != "client-state"

    pending = proxy.state_cache.consume(query["state"])
    assert pending is not None
    assert pending.client_state == "client-state"
    assert pending.client_redirect_uri == "https://client.example.com/cb"
    assert pending.client_code_challenge == "challenge"
    assert code_challenge_s256(pending.code_verifier) == query["code_challenge"]


def test_begin_sweeps_stale_states(proxy: OAuthProxy, clock) -> None:
    _begin(proxy)
    clock.advance(601)
    _begin(proxy)

    assert len(proxy.state_cache) == 1


# --------------------------------------------------------------------------- #
# complete                                                                    #
# --------------------------------------------------------------------------- #
def test_complete_issues_auth_session_and_redirects(proxy, store, provider) -> None:
    state = _begin(proxy)

    redirect = proxy.complete("provider-code", state)

    assert redirect.startswith("https://client.example.com/cb?")
    query = _query(redirect)
    assert query["state"] == "client-state"
    auth_session_id = query["code"]
    uuid.UUID(auth_session_id)
    assert store.get_access_token(auth_session_id) == "provider-access-provider-code"
    # the stored PKCE verifier went to the provider
    assert provider.exchange_calls[0][0] == "provider-code"
    assert provider.exchange_calls[0][1]


def test_complete_defaults_redirect_and_state(proxy, provider) -> None:
    state = _begin(proxy, client_redirect_uri=None, client_state=None)

    redirect = proxy.complete("code", state)

    assert redirect.startswith(DEFAULT_CLIENT_REDIRECT_URI + "?")
    assert _query(redirect)["state"] == state


def test_complete_preserves_client_query_parameters(proxy, provider) -> None:
    state = _begin(proxy, client_redirect_uri="https://client.example.com/cb?x=1")

    query = _query(proxy.complete("code", state))

    assert query["x"] == "1"
    assert "code" in query


def test_state_is_single_use_after_success(proxy, provider) -> None:
    state = _begin(proxy)
    proxy.complete("code", state)

    with pytest.raises(InvalidStateError):
        proxy.complete("code", state)


def test_state_is_single_use_after_failure(proxy, provider, store) -> None:
    provider.exchange_error = ProviderError("Token exchange", error="invalid_grant")
    state = _begin(proxy)

    with pytest.raises(ServerError):
        proxy.complete("code", state)

    provider.exchange_error = None
    with pytest.raises(InvalidStateError):
        proxy.complete("code", state)
    assert store.count() == 0


def test_complete_with_provider_error_consumes_state(proxy, provider) -> None:
    state = _begin(proxy)

    with pytest.raises(AuthorizationDeniedError) as excinfo:
        proxy.complete(None, state, error="access_denied", error_description="nope")
    assert excinfo.value.status_code == 400
    assert excinfo.value.to_payload()["error"] == "access_denied"

    with pytest.raises(InvalidStateError):
        proxy.complete("code", state)
    assert provider.exchange_calls == []


def test_complete_requires_code_and_state(proxy) -> None:
    with pytest.raises(InvalidRequestError):
        proxy.complete(None, "state")
    with pytest.raises(InvalidRequestError):
        proxy.complete("code", None)


def test_complete_rejects_unknown_or_expired_state(proxy, clock, provider) -> None:
    with pytest.raises(InvalidStateError) as excinfo:
        proxy.complete("code", "forged")
    assert excinfo.value.error == "invalid_request"

    state = _begin(proxy)
    clock.advance(601)
    with pytest.raises(InvalidStateError):
        proxy.complete("code", state)


# --------------------------------------------------------------------------- #
# issue_token                                                                 #
# --------------------------------------------------------------------------- #
def _authenticate(proxy: OAuthProxy) -> str:
    return _query(proxy.complete("code", _begin(proxy)))["code"]


def test_authorization_code_grant_returns_same_id(proxy, provider) -> None:
    auth_id = _authenticate(proxy)

    body = proxy.issue_token("authorization_code", code=auth_id)

    assert body == {
        "access_token": auth_id,
        "refresh_token": auth_id,
        "token_type": "Bearer",
        "expires_in": 3600,
    }


def test_authorization_code_grant_unknown_id(proxy, store, sessions) -> None:
    with pytest.raises(InvalidGrantError) as excinfo:
        proxy.issue_token("authorization_code", code="unknown-id")

    assert excinfo.value.status_code == 400
    assert excinfo.value.to_payload() == {"error": "invalid_grant"}
    assert store.count() == 0
    assert sessions.count() == 0


def test_authorization_code_grant_requires_code(proxy) -> None:
    with pytest.raises(InvalidRequestError):
        proxy.issue_token("authorization_code")


def test_authorization_code_grant_refresh_failure_is_server_error(
    proxy, store, provider, tokens_factory
) -> None:
    provider.refresh_error = ProviderError("Token refresh", error="invalid_grant")
    store.store("auth-1", tokens_factory(expires_in=60))

    with pytest.raises(ServerError) as excinfo:
        proxy.issue_token("authorization_code", code="auth-1")
    assert excinfo.value.status_code == 500


def test_refresh_grant_rotates_id(proxy, store, provider) -> None:
    old_id = _authenticate(proxy)
    old_expiry = store.expiry(old_id)

    body = proxy.issue_token("refresh_token", refresh_token=old_id)

    new_id = body["access_token"]
    assert body["refresh_token"] == new_id
    assert new_id != old_id
    assert store.has(old_id) is False
    assert store.has(new_id) is True
    assert store.expiry(new_id) >= old_expiry


def test_rotated_refresh_token_cannot_be_replayed(proxy, provider) -> None:
    old_id = _authenticate(proxy)
    proxy.issue_token("refresh_token", refresh_token=old_id)

    with pytest.raises(InvalidGrantError):
        proxy.issue_token("refresh_token", refresh_token=old_id)


def test_refresh_grant_refreshes_near_expiry_grant(
    proxy, store, provider, tokens_factory, clock
) -> None:
    store.store("old", tokens_factory(expires_in=60))
    old_expiry = store.expiry("old")

    new_id = proxy.issue_token("refresh_token", refresh_token="old")["access_token"]

    assert provider.refresh_calls == ["refresh-1"]
    assert store.expiry(new_id) > old_expiry
    assert store.get_tokens(new_id).access_token == "refreshed-access-1"


def test_refresh_grant_failed_refresh_is_401(
    proxy, store, provider, tokens_factory
) -> None:
    provider.refresh_error = ProviderError("Token refresh", error="invalid_grant")
    store.store("old", tokens_factory(expires_in=60))

    with pytest.raises(InvalidGrantError) as excinfo:
        proxy.issue_token("refresh_token", refresh_token="old")

    assert excinfo.value.status_code == 401
    assert store.has("old") is False


def test_refresh_grant_errors(proxy) -> None:
    with pytest.raises(InvalidRequestError):
        proxy.issue_token("refresh_token")
    with pytest.raises(InvalidGrantError) as excinfo:
        proxy.issue_token("refresh_token", refresh_token="unknown")
    assert excinfo.value.status_code == 400


def test_refresh_grant_relinks_transport_sessions(proxy, sessions, provider) -> None:
    old_id = _authenticate(proxy)
    sessions.create("mcp-1", auth_session_id=old_id)

    new_id = proxy.issue_token("refresh_token", refresh_token=old_id)["access_token"]

    assert sessions.get("mcp-1").auth_session_id == new_id
    assert [s.session_id for s in sessions.get_by_auth_session(new_id)] == ["mcp-1"]


@pytest.mark.parametrize("grant_type", ["password", "client_credentials", None])
def test_unsupported_grant_type(proxy, grant_type) -> None:
    with pytest.raises(UnsupportedGrantTypeError) as excinfo:
        proxy.issue_token(grant_type)
    assert excinfo.value.status_code == 400


# --------------------------------------------------------------------------- #
# registration / metadata / revocation                                        #
# --------------------------------------------------------------------------- #
def test_register_client_always_accepts(proxy) -> None:
    first = proxy.register_client(["https://client.example.com/cb"])
    second = proxy.register_client()

    assert first["client_id"] != second["client_id"]
    assert first["redirect_uris"] == ["https://client.example.com/cb"]
    assert second["redirect_uris"] == []
    assert first["token_endpoint_auth_method"] == "none"
    assert first["grant_types"] == ["authorization_code", "refresh_token"]


def test_authorization_server_metadata() -> None:
    meta = OAuthProxy.authorization_server_metadata("https://mcp.example.com/")

    assert meta["issuer"] == "https://mcp.example.com"
    assert meta["authorization_endpoint"] == "https://mcp.example.com/oauth/authorize"
    assert meta["token_endpoint"] == "https://mcp.example.com/oauth/token"
    assert meta["registration_endpoint"] == "https://mcp.example.com/oauth/register"
    assert meta["code_challenge_methods_supported"] == ["S256"]
    assert meta["grant_types_supported"] == ["authorization_code", "refresh_token"]


def test_protected_resource_metadata() -> None:
    meta = OAuthProxy.protected_resource_metadata("https://mcp.example.com")

    assert meta == {
        "resource": "https://mcp.example.com/mcp",
        "authorization_servers": ["https://mcp.example.com"],
        "bearer_methods_supported": ["header"],
        "resource_documentation": "https://mcp.example.com",
    }


def test_revoke_deletes_record_and_revokes_at_provider(
    proxy, store, sessions, provider, monkeypatch
) -> None:
    revoked: list[str] = []
    monkeypatch.setattr(
        oauth_client, "revoke_token", lambda config, token: revoked.append(token)
    )
    auth_id = _authenticate(proxy)
    sessions.create("mcp-1", auth_session_id=auth_id)

    assert proxy.revoke(auth_id) is True

    assert store.has(auth_id) is False
    assert revoked == ["provider-refresh-code"]
    assert sessions.get("mcp-1").auth_session_id is None
    assert proxy.revoke(auth_id) is False


def test_revoke_tolerates_provider_failure(proxy, store, provider, monkeypatch) -> None:
    def failing_revoke(config, token):
        raise ProviderError("Token revocation", error="network_error")

    monkeypatch.setattr(oauth_client, "revoke_token", failing_revoke)
    auth_id = _authenticate(proxy)

    assert proxy.revoke(auth_id) is True
    assert store.has(auth_id) is False


@pytest.mark.parametrize(
    "params",
    [
        {"grant_type": "authorization_code", "code": 123},
        {"grant_type": "refresh_token", "refresh_token": ["a", "b"]},
        {"grant_type": {"type": "authorization_code"}},
    ],
)
def test_issue_token_rejects_non_string_parameters(proxy, store, params) -> None:
    with pytest.raises(InvalidRequestError) as excinfo:
        proxy.issue_token(**params)

    assert excinfo.value.status_code == 400
    assert store.count() == 0
