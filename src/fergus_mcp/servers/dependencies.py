"""Request-scoped dependency providers for tool functions.

Tools never see the client's bearer credential or the provider tokens
directly. They ask for an *access token provider*: a no-argument coroutine
that resolves the current provider access token for the authentication
session attached to the request by :class:`AuthSessionMiddleware`, refreshing
it transparently. A ``None`` result means "unauthenticated", not an error.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from fastmcp.server.dependencies import get_http_request
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request

from fergus_mcp.auth.store import TokenStore

logger = logging.getLogger("fergus-mcp.servers.dependencies")

TokenProvider = Callable[[], Awaitable["str | None"]]


def make_token_provider(
    token_store: TokenStore, auth_session_id: str | None
) -> TokenProvider:
    """Bind *auth_session_id* to an async accessor over *token_store*."""

    async def _provider() -> str | None:
        if not auth_session_id:
            return None
        return await run_in_threadpool(token_store.get_access_token, auth_session_id)

    return _provider


def get_auth_session_id(request: Request | None = None) -> str | None:
    """Return the authentication session id resolved for the current request."""
    if request is None:
        try:
            request = get_http_request()
        except RuntimeError:
            logger.debug("No active HTTP request; treating call as unauthenticated")
            return None
    return getattr(request.state, "auth_session_id", None)


def get_access_token_provider(request: Request | None = None) -> TokenProvider:
    """Return the token accessor for the current HTTP request.

    Raises
    ------
    RuntimeError
        When the request did not pass through :class:`AuthSessionMiddleware`.
    """
    if request is None:
        request = get_http_request()
    token_store: TokenStore | None = getattr(request.state, "token_store", None)
    if token_store is None:
        raise RuntimeError("Token store is not available on the request state")
    return make_token_provider(token_store, get_auth_session_id(request))
