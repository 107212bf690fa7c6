"""OAuth proxy core package.

This namespace hosts the **HTTP-agnostic** building blocks of the OAuth proxy
that sits between MCP clients and the identity provider.

Sub-modules
-----------
clock
    Test-friendly time abstraction.
pkce
    Proof-Key for Code Exchange and CSRF ``state`` generation.
oauth_client
    Stateless back-channel calls to the identity provider.
state
    Single-use CSRF ``state`` cache for in-flight authorizations.
store
    Token Store contract with memory, file and Redis backends.
sessions
    Registry of live MCP transport sessions.
proxy
    Authorize / callback / token state machines.
models
    Immutable dataclasses for grants, pending authorizations and sessions.
errors
    Exception types mapped to OAuth error responses.
log_utils
    Structured logging helpers (thin wrapper around :pymod:`logging`).

All public objects are re-exported here for convenience.
"""

from __future__ import annotations

from .clock import Clock, ManualClock, default_clock  # noqa: F401
from .errors import (  # noqa: F401
    AuthorizationDeniedError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidStateError,
    OAuthProxyError,
    ProviderError,
    RefreshTokenMissingError,
    ServerError,
    TokenNotFoundError,
    TokenStorageError,
    TokenStoreError,
    UnsupportedGrantTypeError,
    UnsupportedResponseTypeError,
)
from .log_utils import get_auth_logger  # noqa: F401
from .models import (  # noqa: F401
    OAuthTokens,
    PendingAuthorization,
    Session,
    TokenRecord,
)
from .pkce import (  # noqa: F401
    code_challenge_s256,
    generate_code_verifier,
    generate_state,
)
from .proxy import OAuthProxy  # noqa: F401
from .sessions import SessionRegistry  # noqa: F401
from .state import StateCache  # noqa: F401
from .store import (  # noqa: F401
    FileTokenStore,
    MemoryTokenStore,
    RedisTokenStore,
    TokenStore,
    create_token_store,
)

__all__ = [
    # clock
    "Clock",
    "ManualClock",
    "default_clock",
    # pkce
    "generate_code_verifier",
    "code_challenge_s256",
    "generate_state",
    # models
    "OAuthTokens",
    "PendingAuthorization",
    "Session",
    "TokenRecord",
    # errors
    "OAuthProxyError",
    "InvalidRequestError",
    "InvalidGrantError",
    "InvalidStateError",
    "AuthorizationDeniedError",
    "UnsupportedGrantTypeError",
    "UnsupportedResponseTypeError",
    "ServerError",
    "ProviderError",
    "TokenStoreError",
    "TokenNotFoundError",
    "RefreshTokenMissingError",
    "TokenStorageError",
    # components
    "StateCache",
    "TokenStore",
    "MemoryTokenStore",
    "FileTokenStore",
    "RedisTokenStore",
    "create_token_store",
    "SessionRegistry",
    "OAuthProxy",
    # logging helpers
    "get_auth_logger",
]
