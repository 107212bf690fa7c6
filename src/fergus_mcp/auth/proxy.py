"""OAuth proxy: an authorization server facade in front of the identity provider.

The proxy plays two roles at once:

* towards the MCP client it is a standards-shaped authorization server
  (``/oauth/authorize``, ``/oauth/callback``, ``/oauth/token``, discovery
  metadata, dynamic client registration);
* towards the identity provider it is an ordinary confidential OAuth client.

The client never sees provider tokens. After the provider callback the proxy
mints an *authentication-session id* (a random UUID), stores the provider
grant under it, and hands that id to the client as its authorization code.
The token endpoint returns the same id as both access and refresh token; a
``refresh_token`` grant rotates it to a fresh id.

All methods are synchronous and may block on provider calls; the HTTP layer
runs them in a worker thread. Failures are raised as
:class:`~fergus_mcp.auth.errors.OAuthProxyError` subclasses only.
"""

from __future__ import annotations

import threading
import uuid
from typing import Any, Final, Iterable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fergus_mcp.auth import oauth_client
from fergus_mcp.auth.clock import Clock, default_clock
from fergus_mcp.auth.errors import (
    AuthorizationDeniedError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidStateError,
    ProviderError,
    ServerError,
    UnsupportedGrantTypeError,
)
from fergus_mcp.auth.log_utils import get_auth_logger, short_id
from fergus_mcp.auth.models import TOKEN_TYPE, PendingAuthorization
from fergus_mcp.auth.pkce import generate_pkce_pair, generate_state
from fergus_mcp.auth.sessions import SessionRegistry
from fergus_mcp.auth.state import StateCache
from fergus_mcp.auth.store import TokenStore
from fergus_mcp.config import OAuthConfig

_LOGGER_NAME: Final[str] = "fergus-mcp.auth.proxy"
_LOG = get_auth_logger(base_logger_name=_LOGGER_NAME)

DEFAULT_CLIENT_REDIRECT_URI: Final[str] = "https://claude.ai/api/mcp/auth_callback"
# Lifetime advertised to clients; matches the provider's access-token lifetime
CLIENT_TOKEN_EXPIRES_IN: Final[int] = 3600

GRANT_AUTHORIZATION_CODE: Final[str] = "authorization_code"
GRANT_REFRESH_TOKEN: Final[str] = "refresh_token"


def _with_query(url: str, **params: str) -> str:
    """Return *url* with *params* set, keeping unrelated query parameters."""
    parts = urlsplit(url)
    query = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k not in params
    ]
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


def _token_response(auth_session_id: str) -> dict[str, Any]:
    return {
        "access_token": auth_session_id,
        "refresh_token": auth_session_id,
        "token_type": TOKEN_TYPE,
        "expires_in": CLIENT_TOKEN_EXPIRES_IN,
    }


class OAuthProxy:
    """Authorize / callback / token state machines over the auth components."""

    def __init__(
        self,
        config: OAuthConfig,
        token_store: TokenStore,
        state_cache: StateCache | None = None,
        sessions: SessionRegistry | None = None,
        *,
        clock: Clock = default_clock,
    ) -> None:
        self.config = config
        self.token_store = token_store
        self.state_cache = state_cache or StateCache(clock=clock)
        self.sessions = sessions
        self._clock = clock
        self._rotating: set[str] = set()
        self._rotating_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # authorize                                                          #
    # ------------------------------------------------------------------ #
    def begin(
        self,
        client_id: str | None = None,
        client_redirect_uri: str | None = None,
        client_state: str | None = None,
        client_code_challenge: str | None = None,
    ) -> str:
        """Start a flow and return the provider authorize URL."""
        state = generate_state()
        pkce = generate_pkce_pair()
        self.state_cache.put(
            PendingAuthorization(
                state=state,
                code_verifier=pkce.verifier,
                created_at=self._clock(),
                client_id=client_id or None,
                client_state=client_state or None,
                client_redirect_uri=client_redirect_uri or None,
                client_code_challenge=client_code_challenge or None,
                ttl_seconds=self.state_cache.ttl_seconds,
            )
        )
        self.state_cache.sweep()
        _LOG.info("Authorization request from client %s", client_id or "-")
        return oauth_client.build_authorize_url(self.config, state, pkce.challenge)

    # ------------------------------------------------------------------ #
    # callback                                                           #
    # ------------------------------------------------------------------ #
    def complete(
        self,
        code: str | None,
        state: str | None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> str:
        """Finish the provider leg and return the client redirect URL.

        The pending entry for *state* is consumed before anything else is
        checked, so a state value never completes more than one callback.
        """
        pending = self.state_cache.consume(state) if state else None

        if error:
            _LOG.warning("Authorization denied by provider: %s", error)
            raise AuthorizationDeniedError(
                f"{error} - {error_description}" if error_description else error
            )
        if not code or not state:
            raise InvalidRequestError("missing code or state")
        if pending is None:
            _LOG.warning("Invalid or expired state parameter %s", short_id(state))
            raise InvalidStateError("Invalid or expired state parameter")

        try:
            tokens = oauth_client.exchange_code(
                self.config, code, pending.code_verifier
            )
        except ProviderError as exc:
            _LOG.error("Code exchange failed: %s", exc)
            raise ServerError("Failed to complete OAuth flow") from exc

        auth_session_id = str(uuid.uuid4())
        self.token_store.store(auth_session_id, tokens)
        get_auth_logger(
            base_logger_name=_LOGGER_NAME, auth_session_id=auth_session_id
        ).info("Authorization completed; issued authentication session")

        return _with_query(
            pending.client_redirect_uri or DEFAULT_CLIENT_REDIRECT_URI,
            code=auth_session_id,
            state=pending.client_state or state,
        )

    # ------------------------------------------------------------------ #
    # token endpoint                                                     #
    # ------------------------------------------------------------------ #
    def issue_token(
        self,
        grant_type: str | None,
        code: str | None = None,
        refresh_token: str | None = None,
    ) -> dict[str, Any]:
        """Answer a token-endpoint request with the client-facing token body."""
        # JSON bodies can carry numbers, lists or objects here
        for name, value in (
            ("grant_type", grant_type),
            ("code", code),
            ("refresh_token", refresh_token),
        ):
            if value is not None and not isinstance(value, str):
                raise InvalidRequestError(f"{name} must be a string")
        _LOG.info("Token request: grant_type=%s", grant_type)
        if grant_type == GRANT_AUTHORIZATION_CODE:
            return self._grant_authorization_code(code)
        if grant_type == GRANT_REFRESH_TOKEN:
            return self._grant_refresh_token(refresh_token)
        raise UnsupportedGrantTypeError(
            f"grant_type {grant_type!r} is not supported" if grant_type else None
        )

    def _grant_authorization_code(self, code: str | None) -> dict[str, Any]:
        if not code:
            raise InvalidRequestError("code is required")
        if not self.token_store.has(code):
            _LOG.warning("Invalid or expired authorization code %s", short_id(code))
            raise InvalidGrantError()
        if not self.token_store.get_access_token(code):
            raise ServerError("Failed to retrieve access token for session")
        return _token_response(code)

    def _grant_refresh_token(self, old_id: str | None) -> dict[str, Any]:
        if not old_id:
            raise InvalidRequestError("refresh_token is required")
        if not self.token_store.has(old_id):
            raise InvalidGrantError("Refresh token is invalid or expired")

        with self._rotating_lock:
            if old_id in self._rotating:
                raise InvalidGrantError("Refresh token is invalid or expired")
            self._rotating.add(old_id)
        try:
            return self._rotate(old_id)
        finally:
            with self._rotating_lock:
                self._rotating.discard(old_id)

    def _rotate(self, old_id: str) -> dict[str, Any]:
        # lazily refreshes the provider grant; a failure deletes the record
        if not self.token_store.get_access_token(old_id):
            raise InvalidGrantError(
                "Failed to refresh token, please re-authenticate", status_code=401
            )
        record = self.token_store.get_tokens(old_id)
        if record is None:
            raise InvalidGrantError("Refresh token is invalid or expired")

        new_id = str(uuid.uuid4())
        # the new record must be durable before the old one goes away
        self.token_store.store_record(new_id, record)
        self.token_store.delete(old_id)
        if self.sessions is not None:
            self.sessions.relink(old_id, new_id)

        get_auth_logger(base_logger_name=_LOGGER_NAME, auth_session_id=new_id).info(
            "Rotated authentication session from %s", short_id(old_id)
        )
        return _token_response(new_id)

    # ------------------------------------------------------------------ #
    # registration, discovery and revocation                             #
    # ------------------------------------------------------------------ #
    def register_client(
        self, redirect_uris: Iterable[str] | None = None
    ) -> dict[str, Any]:
        """Dynamic client registration (RFC 7591); every client is accepted."""
        client_id = str(uuid.uuid4())
        _LOG.info("Registered dynamic client %s", client_id)
        return {
            "client_id": client_id,
            # unused with PKCE, but some clients require one
            "client_secret": str(uuid.uuid4()),
            "redirect_uris": list(redirect_uris or []),
            "grant_types": [GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN],
            "response_types": ["code"],
            "token_endpoint_auth_method": "none",
        }

    @staticmethod
    def authorization_server_metadata(base_url: str) -> dict[str, Any]:
        """RFC 8414 authorization server metadata."""
        base_url = base_url.rstrip("/")
        return {
            "issuer": base_url,
            "authorization_endpoint": f"{base_url}/oauth/authorize",
            "token_endpoint": f"{base_url}/oauth/token",
            "registration_endpoint": f"{base_url}/oauth/register",
            "response_types_supported": ["code"],
            "grant_types_supported": [GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN],
            "code_challenge_methods_supported": ["S256"],
            "token_endpoint_auth_methods_supported": ["none"],
            "scopes_supported": ["profile"],
        }

    @staticmethod
    def protected_resource_metadata(base_url: str) -> dict[str, Any]:
        """RFC 9728 protected resource metadata for the MCP endpoint."""
        base_url = base_url.rstrip("/")
        return {
            "resource": f"{base_url}/mcp",
            "authorization_servers": [base_url],
            "bearer_methods_supported": ["header"],
            "resource_documentation": base_url,
        }

    def revoke(self, auth_session_id: str) -> bool:
        """Forget an authentication session and revoke its provider grant.

        Returns False when the id was unknown. Provider revocation is best
        effort: the local record is gone either way.
        """
        record = self.token_store.get_tokens(auth_session_id)
        if record is None:
            return False
        self.token_store.delete(auth_session_id)
        if self.sessions is not None:
            self.sessions.unlink_auth_session(auth_session_id)

        log = get_auth_logger(
            base_logger_name=_LOGGER_NAME, auth_session_id=auth_session_id
        )
        if record.refresh_token:
            try:
                oauth_client.revoke_token(self.config, record.refresh_token)
            except ProviderError as exc:
                log.warning("Provider revocation failed: %s", exc)
        log.info("Revoked authentication session")
        return True
