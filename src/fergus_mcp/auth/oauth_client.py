"""Stateless OAuth 2.0 client operations against the identity provider.

Every function takes the :class:`~fergus_mcp.config.OAuthConfig` explicitly
and keeps no state between calls. Back-channel requests authenticate the app
client with HTTP Basic credentials and post form-encoded bodies, as Cognito's
``/oauth2/token`` and ``/oauth2/revoke`` endpoints require.

Failures raise :class:`~fergus_mcp.auth.errors.ProviderError` carrying the
provider's ``error`` / ``error_description``. Requests are never retried.
"""

from __future__ import annotations

import logging
from typing import Any, Final
from urllib.parse import urlencode

import requests

from fergus_mcp.auth.errors import ProviderError
from fergus_mcp.auth.models import TOKEN_TYPE, OAuthTokens
from fergus_mcp.config import OAuthConfig

_LOG = logging.getLogger("fergus-mcp.auth.oauth_client")

# (connect, read) seconds
_TIMEOUT: Final[tuple[int, int]] = (5, 20)
_DEFAULT_EXPIRES_IN: Final[int] = 3600


def build_authorize_url(
    config: OAuthConfig,
    state: str,
    code_challenge: str | None = None,
) -> str:
    """Return the provider ``/oauth2/authorize`` URL for a new flow."""
    params: dict[str, str] = {
        "response_type": "code",
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "state": state,
        "scope": " ".join(config.scopes) or "openid email profile",
    }
    if code_challenge:
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = "S256"
    return f"{config.authorize_endpoint}?{urlencode(params)}"


def _post(config: OAuthConfig, url: str, data: dict[str, str], operation: str):
    try:
        return requests.post(
            url,
            data=data,
            auth=(config.client_id, config.client_secret),
            headers={"Accept": "application/json"},
            timeout=_TIMEOUT,
        )
    except requests.RequestException as exc:
        _LOG.warning(
            "%s request to identity provider failed: %s",
            operation,
            type(exc).__name__,
        )
        raise ProviderError(
            operation,
            error="network_error",
            error_description=type(exc).__name__,
        ) from exc


def _raise_for_error(resp: Any, operation: str) -> None:
    if resp.ok:
        return
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    error = str(body.get("error") or f"http_{resp.status_code}")
    description = body.get("error_description")
    _LOG.warning(
        "%s rejected by identity provider: status=%s error=%s",
        operation,
        resp.status_code,
        error,
    )
    raise ProviderError(
        operation,
        error=error,
        error_description=str(description) if description else None,
        http_status=resp.status_code,
    )


def _parse_tokens(
    resp: Any,
    operation: str,
    *,
    fallback_refresh_token: str | None = None,
) -> OAuthTokens:
    try:
        data = resp.json()
    except ValueError:
        raise ProviderError(operation, error="invalid_response") from None
    if not isinstance(data, dict):
        data = {}
    access_token = data.get("access_token")
    if not access_token or not isinstance(access_token, str):
        raise ProviderError(
            operation,
            error="invalid_response",
            error_description="response missing access_token",
        )
    try:
        expires_in = int(data.get("expires_in") or _DEFAULT_EXPIRES_IN)
    except (TypeError, ValueError):
        raise ProviderError(
            operation,
            error="invalid_response",
            error_description="expires_in is not an integer",
        ) from None
    return OAuthTokens(
        access_token=access_token,
        refresh_token=data.get("refresh_token") or fallback_refresh_token,
        id_token=data.get("id_token") or None,
        expires_in=expires_in,
        token_type=data.get("token_type") or TOKEN_TYPE,
    )


def exchange_code(
    config: OAuthConfig,
    code: str,
    code_verifier: str | None = None,
) -> OAuthTokens:
    """Exchange an authorization *code* for provider tokens."""
    payload: dict[str, str] = {
        "grant_type": "authorization_code",
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "code": code,
    }
    if code_verifier:
        payload["code_verifier"] = code_verifier

    resp = _post(config, config.token_endpoint, payload, "Token exchange")
    _raise_for_error(resp, "Token exchange")
    tokens = _parse_tokens(resp, "Token exchange")
    _LOG.info("Exchanged authorization code (expires in %ss)", tokens.expires_in)
    return tokens


def refresh_tokens(config: OAuthConfig, refresh_token: str) -> OAuthTokens:
    """Refresh a grant; the old refresh token is kept if none is issued."""
    payload = {
        "grant_type": "refresh_token",
        "client_id": config.client_id,
        "refresh_token": refresh_token,
    }
    resp = _post(config, config.token_endpoint, payload, "Token refresh")
    _raise_for_error(resp, "Token refresh")
    tokens = _parse_tokens(
        resp, "Token refresh", fallback_refresh_token=refresh_token
    )
    _LOG.debug("Refreshed provider tokens (expires in %ss)", tokens.expires_in)
    return tokens


def revoke_token(config: OAuthConfig, token: str) -> None:
    """Revoke a refresh token at the provider."""
    payload = {"token": token, "client_id": config.client_id}
    resp = _post(config, config.revoke_endpoint, payload, "Token revocation")
    _raise_for_error(resp, "Token revocation")
